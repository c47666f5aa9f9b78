"""Taste modelling module for TasteMatch.

This module contains the vector math, the per-user embedding aggregator,
the compatibility scorer and the recommendation engine, together with the
collaborator interfaces they read from.
"""
