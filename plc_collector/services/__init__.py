"""
Collector Services

- device/      - Modbus polling (connection pool, device status, poller)
- calibration/ - Raw value to engineering unit conversion
- alarm/       - Debounced out-of-range alarms
- history/     - Window aggregation and raw-sample retention
- config/      - Configuration file loading and validation
- collector/   - Wires the components together and schedules them
"""
