"""
PLC Telemetry Collector

Polls process-control sensors from PLCs over Modbus TCP, calibrates raw
register values, debounces out-of-range alarms and aggregates raw samples
into fixed-width history windows.
"""

__version__ = "1.0.0"
