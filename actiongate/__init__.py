"""
ACTIONGATE: conversational action classification and confirmation.

Turns a chat message into a typed intent, and holds any state-changing
request behind an explicit human confirmation before it is executed.
"""

from actiongate.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
