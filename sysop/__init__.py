"""sysop — natural-language system administration from the terminal."""

__version__ = "0.4.0"
