"""
Rate limiting package for the broker.

Holds fixed-window attempt counters that throttle email-sending endpoints
per client address.
"""
