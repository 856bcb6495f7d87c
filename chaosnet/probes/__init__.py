"""
Chaos 'probes' module.

This module contains *probes* that gather data from the nodes of a topology:
a key/value client, predicates over the values observed on several nodes, and
a convergence probe that polls until a predicate holds or a deadline passes.
"""
