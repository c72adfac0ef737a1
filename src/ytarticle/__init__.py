"""Turn YouTube videos into articles through a remote generation API."""

__version__ = "0.1.0"
