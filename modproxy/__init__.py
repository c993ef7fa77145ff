"""Building blocks for a Go module proxy: errors, path and filter rules,
indexing, logging, fetching with the go command, stashing and WSGI middleware."""

__version__ = "0.1.0"