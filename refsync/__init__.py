"""refsync - local git repository cache with a shared reference registry."""

__version__ = "0.1.0"
