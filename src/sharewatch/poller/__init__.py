"""Per-server poll loops and the supervisor that runs them."""
