"""
Serving Benchmark Toolkit

A lightweight toolkit for comparing inference latency and throughput of two
OpenAI-compatible chat-completion backends.
"""

__version__ = "0.1.0"
__author__ = "Serving Benchmark Toolkit Team"
