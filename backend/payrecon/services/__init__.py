"""
Services for payrecon.

Signing codec, gateway client, transaction store and the payment service
that reconciles them.
"""
