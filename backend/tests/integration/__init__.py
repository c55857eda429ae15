"""
Integration Tests - Quote Orchestrator
"""
