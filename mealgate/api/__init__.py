"""HTTP surface of the entitlement engine."""
