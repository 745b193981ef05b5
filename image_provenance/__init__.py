"""Record container image builds against the exact source revision and deploy them by digest."""

__version__ = "0.1.0"
