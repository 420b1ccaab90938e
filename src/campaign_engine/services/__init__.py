"""Creation engine services."""
