"""
Cloaking Gateway service.
"""
