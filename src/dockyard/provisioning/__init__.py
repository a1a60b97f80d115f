"""Resource thresholds and server auto-provisioning."""
