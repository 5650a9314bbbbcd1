"""Offline processors over the play log and the affinity graph."""

from .reconcile import GraphReconciler

__all__ = ["GraphReconciler"]
