"""Core - piezas compartidas por todo el motor.

- domain/      → Modelos de dominio (sensores, lecturas, reglas, ejecuciones)
- transport/   → Cliente MQTT y handler de mensajes
- redis/       → Conexión a Redis
- monitoring/  → IngestStats, health y métricas Prometheus
- backpressure → cola acotada drop-oldest del despacho de acciones
"""
