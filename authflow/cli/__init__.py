"""CLI module for AuthFlow."""
