from __future__ import annotations

# Import fixtures from testing/ so they are known by pytest
# and can be used with
from testing.relay_server import relay_server  # noqa: F401
