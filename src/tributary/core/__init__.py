"""Core value, workflow and result types."""
