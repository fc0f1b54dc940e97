"""Factory-floor andon call board with Fiix CMMS correlation."""

__version__ = "0.4.0"
