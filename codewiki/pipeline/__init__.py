"""
Ingestion pipeline: URL validation, cloning, chunk extraction, index feeding
and the coordinator that runs them as per-repository jobs.
"""
