"""Transaction & settlement engine for plastic-removal impact purchases."""

__version__ = "0.1.0"
