"""Scheduling, gating, holding and smoothing of poses."""
