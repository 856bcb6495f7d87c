"""
Chaos 'actions' module.

This module contains the *faults* a scenario can inject into a topology and
the controller that applies and reverts them.

Every fault is planned against the current topology as a list of primitive
actions (attach, detach, kill, stop, start, delay, undelay) along with the
exact inverse of that list. The controller keeps applied faults on a stack so
that they can be reverted one by one, or all at once in reverse order.
"""
