"""Package data: bundled seed graph."""
