"""Flask web layer for AuthFlow."""
