"""AI pipeline services."""
