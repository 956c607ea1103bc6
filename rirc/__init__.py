"""IRC client core: network connections, IRCv3 negotiation and command-line setup."""

__version__ = "0.1.7"
__all__ = ["cli", "connection", "ircv3", "netio"]