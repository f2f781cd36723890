"""
Core data layer.

- config-driven snapshot loading (snapshot)
- field record frames, name resolution and formatting helpers (field_data)
- paginated answers and "show more" continuations (paging)
- generic count / list / group-by engine over field records (query_engine)
"""
