# artstop/__init__.py
# ============================================================================
# ARTSTOP ORDER SERVICE - ORDER/PAYMENT LIFECYCLE
# ============================================================================
# Pending order creation, payment verification, gateway webhook
# reconciliation and refunds for the ArtStop storefront.
# ============================================================================

__version__ = "1.0.0"
