"""
Core Module

Configuration, logging, the exception hierarchy, broker interfaces and the
request/worker orchestration built on them.
"""
