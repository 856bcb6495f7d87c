"""
Scenario definitions.

A scenario file declares networks, nodes with their fixed addresses, and an
ordered list of steps. Everything is validated here, before any runtime driver
call, and invalid input raises ConfigError.
"""
import json
import yaml
from collections import namedtuple
from logzero import logger
from os.path import basename, expanduser, splitext

from chaosnet.actions.controller import ALL
from chaosnet.actions.faults import FaultOp, build_fault
from chaosnet.common import StepKind, load_settings, to_bool
from chaosnet.common.errors import ConfigError
from chaosnet.probes.predicates import build_predicate
from chaosnet.topology import Node, Topology, VirtualNetwork

from typing import Dict, List

Step = namedtuple('Step', ['index', 'kind', 'name', 'params', 'timeout',
                           'best_effort'])

CLIENT_METHODS = ['put', 'get', 'delete']

_NODE_FIELDS = ['name', 'image', 'networks', 'endpoint', 'client_network',
                'environment', 'command', 'ports']


class Scenario(object):
    """
    A validated scenario.

    Node and network definitions are kept as data so that each run builds a
    fresh topology with build_topology().
    """

    def __init__(self, name: str, networks: List[Dict], nodes: List[Dict],
                 steps: List[Step], settings: Dict = None, source: str = None):
        self.name = name
        self.networks = networks
        self.nodes = nodes
        self.steps = steps
        self.settings = settings or {}
        self.source = source

    def build_topology(self) -> Topology:
        topology = Topology()
        topology.declare(
            [Node(name=n['name'], image=n.get('image'),
                  addresses=n.get('networks'), endpoint=n.get('endpoint'),
                  client_network=n.get('client_network'),
                  environment=n.get('environment'),
                  command=n.get('command'), ports=n.get('ports'))
             for n in self.nodes],
            [VirtualNetwork(net['name'], net.get('subnet'),
                            internal=to_bool(net.get('internal', False)))
             for net in self.networks])
        return topology

    def __repr__(self):
        return "Scenario({!r}, {} step(s))".format(self.name, len(self.steps))


def load_scenario(path: str) -> Scenario:
    """
    Read and validate a YAML (or JSON) scenario file.

    :param path: The relative or absolute path to the scenario file.
    :type path: str
    :return: Scenario
    """
    path = expanduser(path)
    logger.debug("Loading scenario %s", path)
    try:
        with open(path, 'r') as f:
            if path.endswith('.json'):
                document = json.load(f)
            else:
                document = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError("Unable to read scenario {}: {}".format(path, e))
    default_name = splitext(basename(path))[0]
    return parse_scenario(document, default_name=default_name, source=path)


def _require_list(document: Dict, field: str) -> List:
    value = document.get(field)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError("'{}' must be a list".format(field))
    for item in value:
        if not isinstance(item, dict):
            raise ConfigError("Every entry of '{}' must be a mapping. Got " \
                              ">{}<".format(field, item))
    return value


def parse_scenario(document: Dict, default_name: str = 'scenario',
                   source: str = None) -> Scenario:
    """
    Validate a scenario document (already deserialized).

    :param document: The scenario document.
    :type document: Dict
    :return: Scenario
    """
    if not isinstance(document, dict):
        raise ConfigError("A scenario must be a mapping")
    name = str(document.get('name') or default_name)
    settings = document.get('settings') or {}
    if not isinstance(settings, dict):
        raise ConfigError("'settings' must be a mapping")
    # Validates names and values
    load_settings(settings)

    networks = _require_list(document, 'networks')
    nodes = _require_list(document, 'nodes')
    for node in nodes:
        unknown = set(node) - set(_NODE_FIELDS)
        if unknown:
            raise ConfigError("Node {} has unknown field(s): {}".format(
                              node.get('name'), ", ".join(sorted(unknown))))
        if not node.get('image'):
            raise ConfigError("Node {} needs an image".format(
                              node.get('name')))
        if not isinstance(node.get('networks') or {}, dict):
            raise ConfigError("Networks of node {} must map network names to " \
                              "addresses".format(node.get('name')))
    for network in networks:
        if not network.get('name') or not network.get('subnet'):
            raise ConfigError("Every network needs a name and a subnet. Got " \
                              ">{}<".format(network))
    if not nodes:
        raise ConfigError("Scenario {} declares no nodes".format(name))

    scenario = Scenario(name, networks, nodes, [], settings, source)
    # Declaring a throwaway topology runs every topology level check
    topology = scenario.build_topology()

    raw_steps = _require_list(document, 'steps')
    labels = set()
    for index, raw in enumerate(raw_steps):
        scenario.steps.append(_parse_step(index, raw, topology, labels))
    logger.debug("Loaded %s", scenario)
    return scenario


def _parse_step(index: int, raw: Dict, topology: Topology,
                labels: set) -> Step:
    raw = dict(raw)
    kind_value = raw.pop('kind', None)
    if not StepKind.has_value(kind_value):
        raise ConfigError("Step {} has unknown kind >{}<. Expected one of " \
                          "the following: {}".format(index, kind_value,
                          ", ".join(k.value for k in StepKind)))
    kind = StepKind(kind_value)
    name = raw.pop('name', None)
    timeout = raw.pop('timeout', None)
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ConfigError("Step {} has an invalid timeout >{}<".format(
                              index, timeout))
        if timeout <= 0:
            raise ConfigError("Step {} timeout must be positive".format(index))
    best_effort = to_bool(raw.pop('best_effort', False))

    if kind == StepKind.CLIENT_CALL:
        params = _client_call(index, raw, topology)
    elif kind == StepKind.APPLY_FAULT:
        params = {'fault': _fault(index, raw.get('fault'), topology),
                  'label': name}
        if name is not None:
            if name in labels or name == ALL:
                raise ConfigError("Step {} reuses fault name {}".format(index,
                                                                       name))
            labels.add(name)
    elif kind == StepKind.REVERT_FAULT:
        params = {'fault': _revert_target(index, raw.get('fault'), topology,
                                          labels)}
    elif kind in (StepKind.WAIT_FOR_CONVERGENCE, StepKind.ASSERT):
        params = _predicate(index, raw.get('predicate'), topology)
    else:
        try:
            seconds = float(raw.get('seconds'))
        except (TypeError, ValueError):
            raise ConfigError("Pause step {} needs a number of " \
                              "seconds".format(index))
        if seconds < 0:
            raise ConfigError("Pause step {} seconds must not be " \
                              "negative".format(index))
        params = {'seconds': seconds}
    return Step(index, kind, name, params, timeout, best_effort)


def _client_call(index: int, raw: Dict, topology: Topology) -> Dict:
    node = raw.get('node')
    method = str(raw.get('method', 'get')).lower()
    key = raw.get('key')
    topology.node(node)
    if topology.node(node).endpoint is None:
        raise ConfigError("Step {} calls node {} which has no " \
                          "endpoint".format(index, node))
    if method not in CLIENT_METHODS:
        raise ConfigError("Step {} has unknown client method >{}<".format(
                          index, method))
    if key is None:
        raise ConfigError("Step {} needs a key".format(index))
    if method == 'put' and 'value' not in raw:
        raise ConfigError("Step {} puts without a value".format(index))
    if 'expect' in raw and method != 'get':
        raise ConfigError("Step {}: only get calls can expect a " \
                          "value".format(index))
    params = {'node': node, 'method': method, 'key': str(key)}
    if 'value' in raw:
        params['value'] = str(raw['value'])
    if 'expect' in raw:
        expect = raw['expect']
        params['expect'] = None if expect is None else str(expect)
    return params


def _fault(index: int, definition, topology: Topology) -> FaultOp:
    fault = build_fault(definition)
    fault.validate(topology)
    return fault


def _revert_target(index: int, target, topology: Topology, labels: set):
    if target == ALL:
        return ALL
    if isinstance(target, str):
        if target not in labels:
            raise ConfigError("Step {} reverts fault {} which no earlier step " \
                              "applies".format(index, target))
        return target
    return _fault(index, target, topology)


def _predicate(index: int, definition, topology: Topology) -> Dict:
    if not isinstance(definition, dict):
        raise ConfigError("Step {} needs a predicate mapping".format(index))
    key = definition.get('key')
    if key is None:
        raise ConfigError("Predicate of step {} needs a key".format(index))
    nodes = definition.get('nodes')
    if nodes is None:
        nodes = sorted(name for name, node in topology.nodes.items()
                       if node.endpoint is not None)
    if not nodes:
        raise ConfigError("Predicate of step {} observes no nodes".format(
                          index))
    for node in nodes:
        if topology.node(node).endpoint is None:
            raise ConfigError("Predicate of step {} observes node {} which " \
                              "has no endpoint".format(index, node))
    return {'predicate': build_predicate(definition), 'key': str(key),
            'nodes': list(nodes), 'definition': dict(definition)}
