"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - lifecycle: Canonical booking stage, transitions and the lifecycle store
    - payments: Payment reconciliation, pricing and the Stripe gateway
"""
