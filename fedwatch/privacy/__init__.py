"""Privacy layer: anonymizer, metric buckets, denylist rules, node credentials."""
