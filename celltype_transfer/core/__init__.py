"""Core annotation engines.

Subpackages:
- reference: marker selection, aggregation and reference training
- classification: scoring, fine-tuning and pruning of test samples
"""
