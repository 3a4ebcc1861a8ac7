"""Infraestructura: persistencia y auditoría."""
