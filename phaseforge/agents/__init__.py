"""Function-calling agents."""
