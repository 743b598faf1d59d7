"""Wire-format translation between the CLI and upstream protocol families."""
