"""Domain models, events and collaborator protocols."""
