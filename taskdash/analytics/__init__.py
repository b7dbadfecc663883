"""taskdash Analytics — task model, normalization, time buckets, aggregation, service."""
