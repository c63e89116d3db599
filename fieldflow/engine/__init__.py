"""Dependency graph, planning and evaluation for computed fields."""

from .graph import DependencyEdge, FieldDependencyGraph, build_dependency_graph
from .planner import ChangePlanner

__all__ = ["ChangePlanner", "DependencyEdge", "FieldDependencyGraph", "build_dependency_graph"]
