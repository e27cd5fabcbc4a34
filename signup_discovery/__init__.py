"""signup-discovery: safe-fetch and structured-extraction pipeline for signup requirements."""

__version__ = "0.1.0"
