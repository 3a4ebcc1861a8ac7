"""Monitoreo: stats de procesamiento, health checks y métricas Prometheus."""
