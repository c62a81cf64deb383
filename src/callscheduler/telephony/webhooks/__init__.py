"""
Telephony webhooks package.

Keep import side-effect free.
"""
