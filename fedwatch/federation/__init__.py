"""Federation transport: envelopes, resilient bus client, node presence."""
