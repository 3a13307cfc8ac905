"""Membership dashboard logic (UI-agnostic).

This package contains:
- record model and sheet row parsing
- filter criteria normalization and the filter engine
- record stores (local workbook, Google Sheets)
- the debounced annotation write queue
- AI classification of member feedback
- page compute functions (JSON-serializable payloads)
- chart helpers (Altair -> Vega-Lite spec dict)
"""
