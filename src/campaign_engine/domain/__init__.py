"""Domain types shared by services, adapters and the API layer."""
