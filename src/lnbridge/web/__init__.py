"""Web layer: HTTP contracts, services and controllers for the swap API."""
