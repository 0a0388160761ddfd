"""Core HR module — the employee directory the leave engine reads from."""
