"""Domain core package."""
