"""Scenario classification, candidate chains and model-role mapping."""
