"""
LUCID Bot Core: lifecycle core for a chat bot session over MQTT.

Loads a config snapshot, registers the built-in command modules in every
configured workspace with per-role permission overlays, routes inbound
workspace events to handlers, and runs until a shutdown signal.
"""
