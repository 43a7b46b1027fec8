"""HTTP surface for the family calendar display."""
