"""
Farm Operations Copilot.

Answers natural-language questions about farm operations (fields, farms,
counties, RTK towers, grain, bins, boundaries, maintenance, equipment) from a
read-only JSON snapshot of the farm document store.
"""
