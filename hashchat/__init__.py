"""TCP chat server and client with accounts, direct messages and file transfer."""

__version__ = "0.1.0"

__all__ = ["client", "md5", "server", "userdb"]