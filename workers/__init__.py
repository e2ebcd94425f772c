"""Background jobs run alongside the entitlement engine."""
