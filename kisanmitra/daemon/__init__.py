"""Background retention and freshness jobs."""
