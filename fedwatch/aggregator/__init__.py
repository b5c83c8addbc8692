"""Federation aggregator: record store, inbound validation, periodic stats."""
