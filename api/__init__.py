"""HTTP surface of the watchtower."""
