"""Routes package initialization.

This module exports all blueprints for registration in the main app.

Blueprint organization:
    - payment_bp: Borrower fine payments (create order, verify, failure)
    - admin_fine_bp: Fine adjustments, settlement, audit trails, bulk calculation
    - admin_payment_bp: Reconciliation, payment statistics and metrics
"""
from library_fines.routes.admin_fine_routes import admin_fine_bp
from library_fines.routes.admin_payment_routes import admin_payment_bp
from library_fines.routes.payment_routes import payment_bp

__all__ = [
    'payment_bp',
    'admin_fine_bp',
    'admin_payment_bp',
]
