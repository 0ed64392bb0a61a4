"""
Form Workflow Engine
Blueprint registry.
"""
