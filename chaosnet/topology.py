"""
In memory model of a scenario topology: nodes, virtual networks and the
attachment edges between them.

The model makes no external calls. The fault controller and the scheduler
mirror every successful runtime driver call into it, so at any point it
describes what the container engine is expected to look like.
"""
import ipaddress
from collections import namedtuple
from logzero import logger

from chaosnet.common import NodeState
from chaosnet.common.errors import ConfigError

from typing import Dict, Iterable, List, Union

NodeSnapshot = namedtuple('NodeSnapshot', ['name', 'state', 'addresses',
                                           'attached', 'latency'])
NetworkSnapshot = namedtuple('NetworkSnapshot', ['name', 'subnet', 'members'])
TopologySnapshot = namedtuple('TopologySnapshot', ['nodes', 'networks'])


class VirtualNetwork(object):
    def __init__(self, name: str, subnet: str, internal: bool = False):
        self.name = name
        try:
            self.subnet = ipaddress.ip_network(str(subnet))
        except ValueError as e:
            raise ConfigError("Network {} has an invalid subnet >{}<: " \
                              "{}".format(name, subnet, e))
        self.internal = internal
        self.members = set()

    def __repr__(self):
        return "VirtualNetwork({!r}, {!r})".format(self.name, str(self.subnet))


class Node(object):
    """
    A container in the topology.

    :param name: Unique node name.
    :param image: Container image reference.
    :param addresses: Network name to address. Fixed at declaration time and
        reused on every (re)attach.
    :param endpoint: Client endpoint template, formatted with the node's
        address on client_network, e.g. "http://{address}:8080".
    :param client_network: The network clients reach the node through.
        Defaults to the first network in addresses.
    """

    def __init__(self, name: str, image: str = None,
                 addresses: Dict[str, str] = None, endpoint: str = None,
                 client_network: str = None, environment: Dict = None,
                 command: Union[str, List[str]] = None,
                 ports: List[str] = None):
        self.name = name
        self.image = image
        self.addresses = dict(addresses or {})
        self.endpoint = endpoint
        if client_network is None and self.addresses:
            client_network = next(iter(self.addresses))
        self.client_network = client_network
        self.environment = dict(environment or {})
        self.command = command
        self.ports = list(ports or [])
        self.state = NodeState.PLANNED
        self.attached = set()
        self.latency = {}

    def client_endpoint(self) -> Union[str, None]:
        if self.endpoint is None:
            return None
        address = self.addresses.get(self.client_network, '')
        return self.endpoint.format(address=address, name=self.name)

    def __repr__(self):
        return "Node({!r}, state={})".format(self.name, self.state.name)


class Topology(object):
    def __init__(self):
        self.nodes = {}
        self.networks = {}

    def declare(self, nodes: Iterable[Node],
                networks: Iterable[VirtualNetwork]) -> None:
        """
        Validate and install the declared nodes and networks.

        Attachments are carried by each node's addresses. Nothing is installed
        unless everything validates. Declared attachments start out detached;
        the scheduler attaches them when it realizes the topology.

        :param nodes: The nodes.
        :type nodes: Iterable[Node]
        :param networks: The networks.
        :type networks: Iterable[VirtualNetwork]
        :return: None
        """
        nodes = list(nodes)
        networks = list(networks)
        if self.nodes or self.networks:
            raise ConfigError("Topology has already been declared")

        by_network = {}
        for network in networks:
            if network.name in by_network:
                raise ConfigError("Network {} is declared more than " \
                                  "once".format(network.name))
            by_network[network.name] = network

        by_node = {}
        used = {name: {} for name in by_network}
        for node in nodes:
            if not node.name:
                raise ConfigError("Every node must have a name")
            if node.name in by_node:
                raise ConfigError("Node {} is declared more than " \
                                  "once".format(node.name))
            by_node[node.name] = node
            if node.client_network is not None and \
               node.client_network not in node.addresses:
                raise ConfigError("Node {} uses client network {} but is not " \
                                  "attached to it".format(node.name,
                                  node.client_network))
            for network_name, address in node.addresses.items():
                network = by_network.get(network_name)
                if network is None:
                    raise ConfigError("Node {} is attached to undeclared " \
                                      "network {}".format(node.name,
                                      network_name))
                parsed = self._parse_address(node.name, network, address)
                owner = used[network_name].get(parsed)
                if owner is not None:
                    raise ConfigError("Nodes {} and {} both claim address {} " \
                                      "on network {}".format(owner, node.name,
                                      parsed, network_name))
                used[network_name][parsed] = node.name
                # Normalize the spelling so equality checks are exact
                node.addresses[network_name] = str(parsed)

        self.networks = by_network
        self.nodes = by_node
        logger.debug("Declared topology with nodes %s and networks %s",
                     sorted(by_node), sorted(by_network))

    @staticmethod
    def _parse_address(node_name, network, address):
        try:
            parsed = ipaddress.ip_address(str(address))
        except ValueError:
            raise ConfigError("Node {} has an invalid address >{}< on " \
                              "network {}".format(node_name, address,
                              network.name))
        if parsed not in network.subnet:
            raise ConfigError("Address {} of node {} is outside subnet {} of " \
                              "network {}".format(parsed, node_name,
                              network.subnet, network.name))
        if network.subnet.num_addresses > 2 and \
           parsed in (network.subnet.network_address,
                      network.subnet.broadcast_address):
            raise ConfigError("Address {} of node {} is reserved on network " \
                              "{}".format(parsed, node_name, network.name))
        return parsed

    def node(self, name: str) -> Node:
        try:
            return self.nodes[name]
        except KeyError:
            raise ConfigError("Unknown node {}".format(name))

    def network(self, name: str) -> VirtualNetwork:
        try:
            return self.networks[name]
        except KeyError:
            raise ConfigError("Unknown network {}".format(name))

    def nodes_on(self, network: str) -> List[str]:
        """Names of the nodes declared on network, attached or not."""
        self.network(network)
        return sorted(name for name, node in self.nodes.items()
                      if network in node.addresses)

    def is_attached(self, node: str, network: str) -> bool:
        return network in self.node(node).attached

    def attach(self, node: str, network: str, address: str = None) -> bool:
        """
        Record that node is attached to network. Idempotent.

        :return: bool True if the attachment changed.
        """
        n = self.node(node)
        net = self.network(network)
        reserved = n.addresses.get(network)
        if reserved is None:
            raise ConfigError("Node {} is not declared on network " \
                              "{}".format(node, network))
        if address is not None and \
           str(self._parse_address(node, net, address)) != reserved:
            raise ConfigError("Node {} must keep address {} on network {}, " \
                              "got {}".format(node, reserved, network,
                              address))
        if network in n.attached:
            return False
        n.attached.add(network)
        net.members.add(node)
        return True

    def detach(self, node: str, network: str) -> bool:
        """
        Record that node is detached from network. Idempotent.

        :return: bool True if the attachment changed.
        """
        n = self.node(node)
        net = self.network(network)
        if network not in n.attached:
            return False
        n.attached.discard(network)
        net.members.discard(node)
        return True

    def set_state(self, node: str, state: NodeState) -> None:
        n = self.node(node)
        if n.state != state:
            logger.debug("node %s: %s -> %s", node, n.state.name, state.name)
        n.state = state

    def set_latency(self, node: str, network: str, delay_ms: int) -> None:
        self.network(network)
        self.node(node).latency[network] = int(delay_ms)

    def clear_latency(self, node: str, network: str) -> None:
        self.node(node).latency.pop(network, None)

    def snapshot(self) -> TopologySnapshot:
        """
        Immutable copy of the current state. Never shares structure with the
        live model.
        """
        nodes = tuple(
            NodeSnapshot(name=n.name,
                         state=n.state,
                         addresses=tuple(sorted(n.addresses.items())),
                         attached=frozenset(n.attached),
                         latency=tuple(sorted(n.latency.items())))
            for n in sorted(self.nodes.values(), key=lambda n: n.name))
        networks = tuple(
            NetworkSnapshot(name=net.name,
                            subnet=str(net.subnet),
                            members=frozenset(net.members))
            for net in sorted(self.networks.values(), key=lambda n: n.name))
        return TopologySnapshot(nodes=nodes, networks=networks)


def snapshot_to_dict(snapshot: TopologySnapshot) -> Dict:
    """Render a snapshot as plain JSON serializable data."""
    return {
        'nodes': {
            n.name: {
                'state': n.state.name,
                'addresses': dict(n.addresses),
                'attached': sorted(n.attached),
                'latency_ms': dict(n.latency),
            } for n in snapshot.nodes
        },
        'networks': {
            net.name: {
                'subnet': net.subnet,
                'members': sorted(net.members),
            } for net in snapshot.networks
        },
    }
