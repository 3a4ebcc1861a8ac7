"""Motor de automatización IoT del invernadero.

Estructura:
- core/            → Dominio, transporte MQTT, Redis y monitoreo
- ingest/          → Decodificación, auto-discovery e ingesta de telemetría
- cache/           → Última lectura por sensor (TTL)
- rules/           → Evaluación de reglas, estado por regla y validación
- actions/         → Ejecución de acciones y cola de despacho
- notifications/   → Despacho multicanal con reintentos
- infrastructure/  → Persistencia y registro de ejecuciones
"""
