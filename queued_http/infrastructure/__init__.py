"""
Infrastructure Layer

Broker implementations and the outbound HTTP transport.
"""
