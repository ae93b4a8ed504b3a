"""Kubernetes operator for Kong DataPlanes and Konnect configuration entities."""
