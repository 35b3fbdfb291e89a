"""Domain layer: models, validation, pricing and stats reducers (no I/O)."""
