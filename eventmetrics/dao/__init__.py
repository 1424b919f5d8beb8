"""Data-access objects — one per table, stateless, session passed in."""
