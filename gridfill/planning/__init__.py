"""Execution planning."""

from .selector import PlanSelector, PlanStep

__all__ = ["PlanSelector", "PlanStep"]
