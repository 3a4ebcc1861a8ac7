"""Conexión a Redis (cache de últimas lecturas)."""
