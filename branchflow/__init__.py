"""Branchflow: appointment lifecycle and in-branch queue engine."""
