"""
EMQX -> PostgreSQL telemetry bridge.

Subscribes to an MQTT topic carrying device telemetry JSON, decodes each message and
appends it as one row to a PostgreSQL table.
"""
