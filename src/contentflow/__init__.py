"""contentflow - content pipeline and scheduled publishing."""

__version__ = "0.1.0"
