"""CBF mapping workflows."""
