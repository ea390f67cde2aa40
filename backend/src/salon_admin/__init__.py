"""Salon admin backend: client due dates and reminder dispatch."""
