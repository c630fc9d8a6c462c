"""Scoring, rule evaluation and response primitives."""
