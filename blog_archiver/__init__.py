"""Archive a blog's full history and read it offline."""

__version__ = "0.1.0"
