"""CodeWiki: ingest public GitHub repositories into a searchable code index with a generated wiki."""

__version__ = "1.0.0"
