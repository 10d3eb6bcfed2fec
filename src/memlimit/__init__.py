"""memlimit - run a command under a memory ceiling."""

__version__ = "0.1.0"
