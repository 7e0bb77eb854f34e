"""sandgate: isolated sandbox execution and remote agent gateway bridging."""

__version__ = "0.1.0"
