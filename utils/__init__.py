"""Console rendering and input validation helpers."""
