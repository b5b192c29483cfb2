"""Session model, lifecycle reconciliation and the active session cache."""
