import copy

from chaosnet.common import NodeState
from chaosnet.common.errors import ClientError, RuntimeDriverError
from chaosnet.driver import RuntimeDriver
from chaosnet.probes.client import KeyValueClient
from chaosnet.topology import Node, Topology, VirtualNetwork


class RecordingDriver(RuntimeDriver):
    """
    In memory runtime driver.

    Every call is appended to calls as (method, target, *args) and reflected
    in containers/networks, so tests can assert both call order and the
    resulting engine state.
    """

    def __init__(self, run_id='test-run'):
        self.run_id = run_id
        self.calls = []
        self.networks = set()
        self.containers = {}
        self._failures = {}

    def fail(self, method, target=None, error=None, times=None):
        """
        Make method (on target, or on any target when None) raise error.

        :param times: Fail only that many times, then succeed.
        """
        if error is None:
            error = RuntimeDriverError("{} {} failed".format(method, target))
        self._failures[(method, target)] = [error, times]

    def calls_to(self, method):
        return [c for c in self.calls if c[0] == method]

    def _record(self, method, target, *args):
        self.calls.append((method, target) + args)
        for key in ((method, target), (method, None)):
            entry = self._failures.get(key)
            if entry is None:
                continue
            error, times = entry
            if times is not None:
                if times <= 0:
                    continue
                entry[1] -= 1
            raise error

    def create_network(self, network, timeout=None):
        self._record('create_network', network.name)
        self.networks.add(network.name)

    def remove_network(self, network, timeout=None):
        self._record('remove_network', network.name)
        self.networks.discard(network.name)

    def create_node(self, node, timeout=None):
        self._record('create_node', node.name)
        self.containers[node.name] = {'running': False,
                                      'networks': dict(node.addresses),
                                      'latency': {}}

    def remove_node(self, node, timeout=None):
        self._record('remove_node', node.name)
        self.containers.pop(node.name, None)

    def start_node(self, node, timeout=None):
        self._record('start_node', node)
        self.containers[node]['running'] = True

    def stop_node(self, node, graceful=True, timeout=None):
        self._record('stop_node', node, graceful)
        self.containers[node]['running'] = False

    def attach_network(self, node, network, address, timeout=None):
        self._record('attach_network', node, network, address)
        self.containers[node]['networks'][network] = address

    def detach_network(self, node, network, timeout=None):
        self._record('detach_network', node, network)
        self.containers[node]['networks'].pop(network, None)

    def set_latency(self, node, network, address, delay_ms, timeout=None):
        self._record('set_latency', node, network, delay_ms)
        self.containers[node]['latency'][network] = delay_ms

    def clear_latency(self, node, network, address, timeout=None):
        self._record('clear_latency', node, network)
        self.containers[node]['latency'].pop(network, None)


class FakeKeyValueCluster(KeyValueClient):
    """
    A replicated key/value store living on the containers of a
    RecordingDriver.

    Running nodes attached to the cluster network replicate to each other,
    resolving conflicting writes last-writer-wins. A node that is not running,
    or not attached to the client network, cannot be reached.
    """

    def __init__(self, driver, client_network='nw1', cluster_network='nw2'):
        self.driver = driver
        self.client_network = client_network
        self.cluster_network = cluster_network
        self.stores = {}
        self.clock = 0
        self.requests = []

    def _reachable(self, node):
        container = self.driver.containers.get(node)
        if container is None or not container['running'] or \
           self.client_network not in container['networks']:
            raise ClientError("{} is unreachable".format(node), node=node)

    def _sync(self):
        group = [name for name, c in sorted(self.driver.containers.items())
                 if c['running'] and self.cluster_network in c['networks']]
        merged = {}
        for node in group:
            for key, entry in self.stores.get(node, {}).items():
                if key not in merged or entry[0] > merged[key][0]:
                    merged[key] = entry
        for node in group:
            self.stores[node] = dict(merged)

    def _write(self, node, key, value):
        self._sync()
        self._reachable(node)
        self.clock += 1
        self.stores.setdefault(node, {})[key] = (self.clock, value)
        self._sync()

    def put(self, node, key, value, timeout=None):
        self.requests.append(('put', node, key, value))
        self._write(node, key, value)

    def delete(self, node, key, timeout=None):
        self.requests.append(('delete', node, key))
        self._write(node, key, None)

    def get(self, node, key, timeout=None):
        self.requests.append(('get', node, key))
        self._sync()
        self._reachable(node)
        return self.stores.get(node, {}).get(key, (0, None))[1]


def two_node_document(steps=None, **settings):
    """Scenario document for two nodes on an app (nw1) and a cluster (nw2)
    network."""
    document = {
        'name': 'two-nodes',
        'settings': dict({'poll_interval': 0.01, 'step_timeout': 5,
                          'scenario_timeout': 30}, **settings),
        'networks': [
            {'name': 'nw1', 'subnet': '172.28.0.0/24'},
            {'name': 'nw2', 'subnet': '172.29.0.0/24', 'internal': True},
        ],
        'nodes': [
            {'name': 'node1', 'image': 'kv-demo:latest',
             'endpoint': 'http://{address}:8080', 'client_network': 'nw1',
             'networks': {'nw1': '172.28.0.11', 'nw2': '172.29.0.11'}},
            {'name': 'node2', 'image': 'kv-demo:latest',
             'endpoint': 'http://{address}:8080', 'client_network': 'nw1',
             'networks': {'nw1': '172.28.0.12', 'nw2': '172.29.0.12'}},
        ],
        'steps': steps or [],
    }
    return copy.deepcopy(document)


def running_topology(nodes=('node1', 'node2', 'node3')):
    """A declared topology where every node runs, attached to nw1 and nw2."""
    topology = Topology()
    topology.declare(
        [Node(name, image='img',
              addresses={'nw1': '10.0.1.{}'.format(i + 10),
                         'nw2': '10.0.2.{}'.format(i + 10)})
         for i, name in enumerate(nodes)],
        [VirtualNetwork('nw1', '10.0.1.0/24'),
         VirtualNetwork('nw2', '10.0.2.0/24')])
    for name in nodes:
        for network, address in topology.node(name).addresses.items():
            topology.attach(name, network, address)
        topology.set_state(name, NodeState.RUNNING)
    return topology


def running_driver(topology, run_id='test-run'):
    """A RecordingDriver whose engine state matches topology. No calls."""
    driver = RecordingDriver(run_id)
    for network in topology.networks:
        driver.networks.add(network)
    for name, node in topology.nodes.items():
        driver.containers[name] = {
            'running': node.state == NodeState.RUNNING,
            'networks': {n: node.addresses[n] for n in node.attached},
            'latency': {}}
    return driver
