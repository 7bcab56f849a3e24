"""Service layer: audience resolution, campaign lifecycle and delivery."""
