"""Sharing-detection rules: models, YAML loading and evaluation."""
