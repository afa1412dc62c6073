"""Local HTTP API for the document chat core."""
