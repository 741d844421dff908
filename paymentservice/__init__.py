"""
paymentservice - M-Pesa STK Push initiation and callback reconciliation.

    from paymentservice.api import create_app
    from paymentservice.config import get_settings

    app = create_app(get_settings())
"""

__version__ = "1.0.0"
