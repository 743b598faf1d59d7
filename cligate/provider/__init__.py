"""Configuration collaborator: snapshot loading from the JSON config file."""
