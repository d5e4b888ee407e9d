"""Copy decisions: filters, sizing, execution and position state."""
