"""Core (UI-agnostic) module-grid logic.

This package contains:
- schema registry and in-memory record store
- expression evaluator, aggregation engine, relationship resolver
- table controller and branch dashboard controller
- chart helpers (Altair -> Vega-Lite spec dict)
"""
