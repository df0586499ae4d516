"""starrecall: semantic search over your GitHub stars."""
