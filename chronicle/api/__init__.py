"""HTTP surface for Chronicle."""
