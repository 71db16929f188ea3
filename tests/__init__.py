"""Test suite for the kinetic MPM simulator.

This package contains:
- Unit tests for the material, boundary, force-field, kinetic, emitter and viewport components
- Solver invariant tests (finite state, containment, momentum, mass positivity)
- Scenario tests exercising the full world step pipeline
"""
