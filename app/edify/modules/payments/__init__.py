"""
Payments module: Paystack, Flutterwave and MTN MoMo gateway clients, payment
transactions, verification and webhook handling.
"""
