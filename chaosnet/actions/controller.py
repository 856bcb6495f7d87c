from collections import namedtuple
from logzero import logger

from chaosnet.actions.faults import (
    Action,
    FaultOp,
    FaultPlan,
    Partition,
    Verb,
    inverse_action,
)
from chaosnet.common import DEFAULT_CHAOSNET_DRIVER_TIMEOUT, NodeState
from chaosnet.common.errors import FaultConflict, RuntimeDriverError
from chaosnet.helpers import Deadline

from typing import List, Union

ActiveFault = namedtuple('ActiveFault', ['fault', 'plan', 'label'])
RevertFailure = namedtuple('RevertFailure', ['fault', 'label', 'error'])

ALL = "all"


class FaultController(object):
    """
    Apply and revert faults against a topology and its runtime driver.

    Applied faults are kept on a stack together with the actions that undo
    them. revert_all() unwinds the stack strictly last-in first-out.

    :param topology: The scenario's topology model.
    :type topology: chaosnet.topology.Topology
    :param driver: The runtime driver realizing the topology.
    :type driver: chaosnet.driver.RuntimeDriver
    :param timeout: Timeout of each individual driver call in seconds.
    :type timeout: Union[int, float]
    """

    def __init__(self, topology, driver,
                 timeout=DEFAULT_CHAOSNET_DRIVER_TIMEOUT):
        self.topology = topology
        self.driver = driver
        self.timeout = timeout
        self._active = []

    @property
    def active(self) -> List[ActiveFault]:
        """Active faults in application order. A copy."""
        return list(self._active)

    def is_active(self, fault: FaultOp) -> bool:
        return self._find(fault) is not None

    def _find(self, fault) -> Union[int, None]:
        for i in range(len(self._active) - 1, -1, -1):
            record = self._active[i]
            if isinstance(fault, str):
                if record.label == fault:
                    return i
            elif isinstance(fault, ActiveFault):
                if record is fault:
                    return i
            elif record.fault == fault:
                return i
        return None

    def _covering_partition(self, fault: Partition) -> Union[ActiveFault, None]:
        """
        The most recent active partition on the same network, if the nodes of
        fault are all already detached from it by active partitions.
        """
        detached = set()
        latest = None
        for record in self._active:
            if isinstance(record.fault, Partition) and \
               record.fault.network == fault.network:
                detached.update(a.node for a in record.plan.forward)
                if record.fault.nodes & fault.nodes:
                    latest = record
        if latest is not None and fault.nodes <= detached:
            return latest
        return None

    def apply(self, fault: FaultOp, label: str = None,
              deadline: Deadline = None) -> ActiveFault:
        """
        Inject a fault.

        A partition whose nodes are all already partitioned off the network
        is a no-op returning the previously recorded fault. If a driver call
        fails midway, the actions already executed are rolled back before the
        error propagates.

        :param fault: The fault to inject.
        :type fault: FaultOp
        :param label: Optional name the fault can later be reverted by.
        :type label: str
        :param deadline: Bounds every driver call made.
        :type deadline: chaosnet.helpers.Deadline
        :return: ActiveFault
        """
        fault.validate(self.topology)
        if isinstance(fault, Partition):
            covering = self._covering_partition(fault)
            if covering is not None:
                logger.info("%s is already in effect. Nothing to do.", fault)
                return covering
        message = fault.conflict(self.topology, self.active)
        if message:
            logger.error("Refusing to apply %s: %s", fault, message)
            raise FaultConflict("Cannot apply {}: {}".format(fault, message),
                                fault=fault, active=self.active)

        plan = fault.plan(self.topology)
        logger.info("Applying %s", fault)
        executed = []
        try:
            for action in plan.forward:
                self._execute(action, deadline)
                executed.append(action)
        except Exception as e:
            logger.error("Applying %s failed after %d of %d action(s): %s",
                         fault, len(executed), len(plan.forward), e)
            self._rollback(executed)
            raise

        record = ActiveFault(fault, plan, label)
        self._active.append(record)
        return record

    def _rollback(self, executed: List[Action]) -> None:
        for action in reversed(executed):
            undo = inverse_action(action)
            try:
                self._execute(undo)
            except RuntimeDriverError as e:
                logger.error("Rolling back %s failed", action)
                logger.exception(e)

    def revert(self, fault: Union[FaultOp, ActiveFault, str],
               deadline: Deadline = None) -> Union[bool, List[RevertFailure]]:
        """
        Revert one active fault, or every active fault when given "all".

        Reverting a fault that is not active is a no-op returning False.

        :param fault: A fault, an ActiveFault, a label, or "all".
        :type fault: Union[FaultOp, ActiveFault, str]
        :return: bool, or the list of failures when reverting "all"
        """
        if fault == ALL:
            return self.revert_all(deadline)
        index = self._find(fault)
        if index is None:
            logger.info("%s is not active. Nothing to revert.", fault)
            return False
        self._revert_at(index, deadline)
        return True

    def _revert_at(self, index: int, deadline: Deadline) -> None:
        record = self._active[index]
        logger.info("Reverting %s", record.fault)
        inverse = list(record.plan.inverse)
        for i, action in enumerate(inverse):
            try:
                self._execute(action, deadline)
            except Exception:
                # Keep what is left to undo so a later revert resumes here
                remaining = FaultPlan(record.plan.forward, inverse[i:])
                self._active[index] = record._replace(plan=remaining)
                raise
        del self._active[index]

    def revert_all(self, deadline: Deadline = None) -> List[RevertFailure]:
        """
        Revert every active fault in reverse order of application.

        A failing revert is logged and collected, and the unwind carries on
        with the next older fault. Faults that failed to revert stay active.

        :return: List[RevertFailure]
        """
        failures = []
        index = len(self._active) - 1
        if index >= 0:
            logger.info("Reverting all %d active fault(s)...", index + 1)
        while index >= 0:
            record = self._active[index]
            try:
                self._revert_at(index, deadline)
            except Exception as e:
                logger.error("Failed to revert %s", record.fault)
                logger.exception(e)
                failures.append(RevertFailure(record.fault, record.label, e))
            index -= 1
        return failures

    def _timeout(self, deadline: Deadline):
        if deadline is None:
            return self.timeout
        return deadline.bound(self.timeout)

    def _execute(self, action: Action, deadline: Deadline = None) -> None:
        """Run one primitive through the driver and mirror it in the model."""
        timeout = self._timeout(deadline)
        node = action.node
        verb = action.verb
        logger.debug("%s %s %s", verb.value, node, action.network or '')
        if verb == Verb.DETACH:
            self.driver.detach_network(node, action.network, timeout=timeout)
            self.topology.detach(node, action.network)
        elif verb == Verb.ATTACH:
            self.driver.attach_network(node, action.network, action.address,
                                       timeout=timeout)
            self.topology.attach(node, action.network, action.address)
        elif verb == Verb.KILL:
            self.driver.stop_node(node, graceful=False, timeout=timeout)
            self.topology.set_state(node, NodeState.CRASHED)
        elif verb == Verb.STOP:
            self.driver.stop_node(node, graceful=True, timeout=timeout)
            self.topology.set_state(node, NodeState.STOPPED)
        elif verb == Verb.START:
            prior = self.topology.node(node).state
            self.topology.set_state(node, NodeState.RESTARTING)
            try:
                self.driver.start_node(node, timeout=timeout)
            except Exception:
                self.topology.set_state(node, prior)
                raise
            self.topology.set_state(node, NodeState.RUNNING)
        elif verb == Verb.DELAY:
            self.driver.set_latency(node, action.network, action.address,
                                    action.delay_ms, timeout=timeout)
            self.topology.set_latency(node, action.network, action.delay_ms)
        elif verb == Verb.UNDELAY:
            self.driver.clear_latency(node, action.network, action.address,
                                      timeout=timeout)
            self.topology.clear_latency(node, action.network)
        else:
            raise ValueError("Unknown action {}".format(verb))
