"""Repository layer modules."""
