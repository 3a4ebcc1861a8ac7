"""Transporte MQTT: cliente paho y handler de mensajes entrantes."""
