"""
Reversible faults.

A fault is an immutable value. Applying it starts with plan(), which reads the
topology and returns the primitive actions that inject the fault together with
the exact actions that undo it. The fault controller executes plans; faults
never touch the runtime driver themselves.
"""
from collections import namedtuple
from enum import Enum

from chaosnet.common import NodeState
from chaosnet.common.errors import ConfigError

from typing import Dict, Iterable, List, Union


class Verb(Enum):
    ATTACH = 'attach'
    DETACH = 'detach'
    KILL = 'kill'
    STOP = 'stop'
    START = 'start'
    DELAY = 'delay'
    UNDELAY = 'undelay'


Action = namedtuple('Action', ['verb', 'node', 'network', 'address',
                               'delay_ms'])
Action.__new__.__defaults__ = (None, None, None)

FaultPlan = namedtuple('FaultPlan', ['forward', 'inverse'])


def inverse_action(action: Action) -> Action:
    """
    The primitive that undoes a single primitive.

    Used to roll back a partially executed plan, so every verb must have one.
    """
    verb = action.verb
    if verb == Verb.ATTACH:
        return action._replace(verb=Verb.DETACH)
    if verb == Verb.DETACH:
        return action._replace(verb=Verb.ATTACH)
    if verb in (Verb.KILL, Verb.STOP):
        return action._replace(verb=Verb.START)
    if verb == Verb.START:
        return action._replace(verb=Verb.KILL)
    if verb == Verb.DELAY:
        return action._replace(verb=Verb.UNDELAY)
    if verb == Verb.UNDELAY:
        return action._replace(verb=Verb.DELAY)
    raise ValueError("No inverse for {}".format(verb))


def invert(actions: Iterable[Action]) -> List[Action]:
    return [inverse_action(a) for a in reversed(list(actions))]


class FaultOp(object):
    """Base class of the fault variants."""
    kind = None

    def _key(self):
        raise NotImplementedError

    def __eq__(self, other):
        return type(self) is type(other) and self._key() == other._key()

    def __ne__(self, other):
        return not self == other

    def __hash__(self):
        return hash((type(self).__name__,) + self._key())

    def validate(self, topology) -> None:
        """Raise ConfigError if the fault references unknown nodes/networks."""
        raise NotImplementedError

    def conflict(self, topology, active) -> Union[str, None]:
        """
        Describe why the fault cannot be applied on top of the active faults,
        or return None.
        """
        return None

    def plan(self, topology) -> FaultPlan:
        raise NotImplementedError

    def to_dict(self) -> Dict:
        raise NotImplementedError

    def __repr__(self):
        args = ", ".join("{}={!r}".format(k, v)
                         for k, v in self.to_dict().items() if k != 'type')
        return "{}({})".format(type(self).__name__, args)


class Partition(FaultOp):
    """Detach a set of nodes from one network."""
    kind = 'partition'

    def __init__(self, nodes: Iterable[str], network: str):
        if isinstance(nodes, str):
            nodes = [nodes]
        self.nodes = frozenset(nodes)
        self.network = network
        if not self.nodes:
            raise ConfigError("A partition needs at least one node")

    def _key(self):
        return (tuple(sorted(self.nodes)), self.network)

    def validate(self, topology) -> None:
        topology.network(self.network)
        for name in self.nodes:
            if self.network not in topology.node(name).addresses:
                raise ConfigError("Cannot partition node {} off network {}: " \
                                  "it is not declared on it".format(
                                  name, self.network))

    def plan(self, topology) -> FaultPlan:
        forward = [Action(Verb.DETACH, name, self.network,
                          topology.node(name).addresses[self.network])
                   for name in sorted(self.nodes)
                   if topology.is_attached(name, self.network)]
        return FaultPlan(forward, invert(forward))

    def to_dict(self) -> Dict:
        return {'type': self.kind, 'nodes': sorted(self.nodes),
                'network': self.network}


class Crash(FaultOp):
    """
    Kill a node without removing it. Its identity and addresses stay
    reserved, so reverting (or a Restart) brings it back unchanged.
    """
    kind = 'crash'

    def __init__(self, node: str):
        self.node = node

    def _key(self):
        return (self.node,)

    def validate(self, topology) -> None:
        topology.node(self.node)

    def conflict(self, topology, active) -> Union[str, None]:
        state = topology.node(self.node).state
        if state == NodeState.CRASHED:
            return "node {} is already crashed".format(self.node)
        if state != NodeState.RUNNING:
            return "node {} is not running ({})".format(self.node, state.name)
        return None

    def plan(self, topology) -> FaultPlan:
        forward = [Action(Verb.KILL, self.node)]
        return FaultPlan(forward, invert(forward))

    def to_dict(self) -> Dict:
        return {'type': self.kind, 'node': self.node}


class Restart(FaultOp):
    """
    Bring a node (back) up. A crashed or stopped node is started; a running
    node is stopped and started again.
    """
    kind = 'restart'

    def __init__(self, node: str):
        self.node = node

    def _key(self):
        return (self.node,)

    def validate(self, topology) -> None:
        topology.node(self.node)

    def conflict(self, topology, active) -> Union[str, None]:
        state = topology.node(self.node).state
        if state in (NodeState.PLANNED, NodeState.RESTARTING):
            return "node {} cannot be restarted while {}".format(self.node,
                                                                state.name)
        latency = topology.node(self.node).latency
        if latency:
            # Restarting the container drops its netem qdisc
            return "node {} carries latency on {}. Revert it first".format(
                   self.node, ", ".join(sorted(latency)))
        return None

    def plan(self, topology) -> FaultPlan:
        state = topology.node(self.node).state
        if state == NodeState.RUNNING:
            # The node ends up in the state it started in. Nothing to undo.
            return FaultPlan([Action(Verb.STOP, self.node),
                              Action(Verb.START, self.node)], [])
        if state == NodeState.STOPPED:
            return FaultPlan([Action(Verb.START, self.node)],
                             [Action(Verb.STOP, self.node)])
        forward = [Action(Verb.START, self.node)]
        return FaultPlan(forward, invert(forward))

    def to_dict(self) -> Dict:
        return {'type': self.kind, 'node': self.node}


class LatencyInjection(FaultOp):
    """Delay egress traffic of a node on one network by delay_ms."""
    kind = 'latency'

    def __init__(self, node: str, network: str, delay_ms: int):
        self.node = node
        self.network = network
        try:
            self.delay_ms = int(delay_ms)
        except (TypeError, ValueError):
            raise ConfigError("Latency delay_ms must be an integer. Got " \
                              ">{}<".format(delay_ms))
        if self.delay_ms <= 0:
            raise ConfigError("Latency delay_ms must be positive. Got " \
                              ">{}<".format(delay_ms))

    def _key(self):
        return (self.node, self.network, self.delay_ms)

    def validate(self, topology) -> None:
        topology.network(self.network)
        if self.network not in topology.node(self.node).addresses:
            raise ConfigError("Cannot delay node {} on network {}: it is not " \
                              "declared on it".format(self.node, self.network))

    def conflict(self, topology, active) -> Union[str, None]:
        node = topology.node(self.node)
        if self.network in node.latency:
            return "node {} already has {}ms latency on {}".format(
                   self.node, node.latency[self.network], self.network)
        if self.network not in node.attached:
            return "node {} is not attached to {}".format(self.node,
                                                          self.network)
        if node.state != NodeState.RUNNING:
            return "node {} is not running ({})".format(self.node,
                                                        node.state.name)
        return None

    def plan(self, topology) -> FaultPlan:
        address = topology.node(self.node).addresses[self.network]
        forward = [Action(Verb.DELAY, self.node, self.network, address,
                          self.delay_ms)]
        return FaultPlan(forward, invert(forward))

    def to_dict(self) -> Dict:
        return {'type': self.kind, 'node': self.node,
                'network': self.network, 'delay_ms': self.delay_ms}


FAULT_TYPES = {
    Partition.kind: Partition,
    Crash.kind: Crash,
    Restart.kind: Restart,
    LatencyInjection.kind: LatencyInjection,
}


def build_fault(definition: Dict) -> FaultOp:
    """
    Build a fault from its scenario file definition.

    Examples:
        {type: partition, nodes: [node1, node2], network: nw2}
        {type: crash, node: node1}
        {type: restart, node: node1}
        {type: latency, node: node1, network: nw1, delay_ms: 200}

    :param definition: The fault definition.
    :type definition: Dict
    :return: FaultOp
    """
    if not isinstance(definition, dict):
        raise ConfigError("A fault must be a mapping. Got >{}<".format(
                          definition))
    params = dict(definition)
    kind = params.pop('type', None)
    cls = FAULT_TYPES.get(kind)
    if cls is None:
        raise ConfigError("Unknown fault type >{}<. Expected one of the " \
                          "following: {}".format(kind,
                          ", ".join(sorted(FAULT_TYPES))))
    try:
        return cls(**params)
    except TypeError as e:
        raise ConfigError("Invalid {} fault {}: {}".format(kind, definition,
                                                           e))
