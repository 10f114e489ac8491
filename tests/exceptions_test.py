from __future__ import annotations

from signalrelay.exceptions import RelayServerError
from signalrelay.exceptions import SessionClosedError
from signalrelay.exceptions import TransportError
from signalrelay.exceptions import UnknownTargetError
from signalrelay.exceptions import UnregisteredClientError


def test_exception_hierarchy() -> None:
    assert issubclass(UnknownTargetError, RelayServerError)
    assert issubclass(UnregisteredClientError, RelayServerError)
    assert issubclass(SessionClosedError, TransportError)
    assert issubclass(TransportError, RelayServerError)
