"""
Collector daemon package for the three-phase power analyzer.

Polls the analyzer over Modbus TCP, decodes its register map into physical
quantities, reconciles the wrapping energy counters into a monotonic
cumulative series, and appends it to a local time-series store.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""
