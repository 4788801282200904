"""Domain layer: models, errors and persistence contracts."""
