"""
chaosnet module

This module contains:
 - a topology model of nodes, virtual networks and fixed addresses
   (topology.py)
 - a runtime driver that realizes a topology with docker (driver.py), on top
   of a local or Fabric based remote execution tool (execute directory).
 - actions that inject and revert faults: partitions, crashes, restarts and
   latency. (actions directory)
 - probes that talk to the system under test and wait for it to converge.
   (probes directory)
 - scenarios: definition, scheduling and reporting (scenario directory)
 - helper functions (helpers.py file)
 - common files (common directory)

A scenario is run against a topology built for that run only. Steps run in
declaration order. Faults are pushed on a stack when applied and every fault
still active is reverted, newest first, before the topology is torn down,
whatever the outcome of the steps.

Unlike a chaos experiment, a scenario is a deterministic test: a step that
fails or times out halts the scenario (unless the step is marked best effort)
and the run's verdict and exit code say so.

Things to consider when adding or modifying faults:
1. A fault must be expressible as primitive actions, each with an exact
   primitive inverse, computed from the topology when the fault is applied.
2. A fault must never leave the topology model out of sync with what the
   runtime driver did, even when applying it fails halfway.
"""
