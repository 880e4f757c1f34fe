"""
Order lifecycle engine: catalog snapshot, order aggregate, gateway
registration, payment verification, webhook reconciliation and operator
overrides. ``pipeline.checkout.CheckoutPipeline`` is the entry point.
"""
