"""Scoring pipeline.

Turns raw collector answers into reporting facts in three resumable stages:
  1. Consolidated analysis (products, sentiment, citation categories)
  2. Position extraction (mention offsets, visibility index, share of answers)
  3. Sentiment storage

The coordinator in ``pipeline`` claims rows one at a time and checkpoints
after every stage.
"""
