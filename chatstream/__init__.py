"""chatstream -- streaming conversation engine for language-model services."""

__version__ = "0.1.0"
