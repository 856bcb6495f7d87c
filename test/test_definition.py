import json
import os
import tempfile

import pytest
import yaml

from chaosnet.actions.faults import Crash, Partition
from chaosnet.common import StepKind
from chaosnet.common.errors import ConfigError
from chaosnet.scenario.definition import load_scenario, parse_scenario

from test.fakes import two_node_document


SPLIT_BRAIN = [
    {'kind': 'apply_fault', 'name': 'split',
     'fault': {'type': 'partition', 'nodes': ['node1', 'node2'],
               'network': 'nw2'}},
    {'kind': 'client_call', 'node': 'node1', 'method': 'put', 'key': 'animal',
     'value': 'dog'},
    {'kind': 'client_call', 'node': 'node2', 'method': 'PUT', 'key': 'animal',
     'value': 'cat'},
    {'kind': 'revert_fault', 'fault': 'split'},
    {'kind': 'wait_for_convergence', 'timeout': 10,
     'predicate': {'type': 'equal', 'key': 'animal'}},
]


def test_parse_scenario():
    scenario = parse_scenario(two_node_document(SPLIT_BRAIN))
    assert scenario.name == 'two-nodes'
    assert [s.kind for s in scenario.steps] == [
        StepKind.APPLY_FAULT, StepKind.CLIENT_CALL, StepKind.CLIENT_CALL,
        StepKind.REVERT_FAULT, StepKind.WAIT_FOR_CONVERGENCE]
    apply_step = scenario.steps[0]
    assert apply_step.params['fault'] == Partition(['node1', 'node2'], 'nw2')
    assert apply_step.params['label'] == 'split'
    assert scenario.steps[2].params == {'node': 'node2', 'method': 'put',
                                        'key': 'animal', 'value': 'cat'}
    assert scenario.steps[3].params['fault'] == 'split'
    wait = scenario.steps[4]
    assert wait.timeout == 10.0
    assert wait.params['nodes'] == ['node1', 'node2']
    assert wait.params['predicate']({'node1': 'cat', 'node2': 'cat'})
    assert not any(s.best_effort for s in scenario.steps)


def test_build_topology_is_fresh():
    scenario = parse_scenario(two_node_document())
    first = scenario.build_topology()
    first.attach('node1', 'nw1')
    second = scenario.build_topology()
    assert first is not second
    assert not second.is_attached('node1', 'nw1')
    assert second.network('nw2').internal is True


def test_other_steps():
    scenario = parse_scenario(two_node_document([
        {'kind': 'apply_fault', 'fault': {'type': 'crash', 'node': 'node1'}},
        {'kind': 'client_call', 'node': 'node2', 'key': 'k', 'expect': None,
         'best_effort': 'yes'},
        {'kind': 'revert_fault', 'fault': {'type': 'crash',
                                           'node': 'node1'}},
        {'kind': 'revert_fault', 'fault': 'all'},
        {'kind': 'assert', 'predicate': {'type': 'value', 'key': 'k',
                                         'value': 1, 'nodes': ['node2']}},
        {'kind': 'pause', 'seconds': 0.5},
    ]))
    steps = scenario.steps
    assert steps[0].params['label'] is None
    assert steps[1].params == {'node': 'node2', 'method': 'get', 'key': 'k',
                               'expect': None}
    assert steps[1].best_effort is True
    assert steps[2].params['fault'] == Crash('node1')
    assert steps[3].params['fault'] == 'all'
    assert steps[4].params['nodes'] == ['node2']
    assert steps[4].params['predicate']({'node2': '1'})
    assert steps[5].params == {'seconds': 0.5}


@pytest.mark.parametrize("steps", [
    [{'kind': 'explode'}],
    [{'kind': 'pause'}],
    [{'kind': 'pause', 'seconds': -1}],
    [{'kind': 'pause', 'seconds': 1, 'timeout': 0}],
    [{'kind': 'pause', 'seconds': 1, 'best_effort': 'maybe'}],
    [{'kind': 'client_call', 'node': 'node9', 'key': 'k'}],
    [{'kind': 'client_call', 'node': 'node1', 'method': 'patch', 'key': 'k'}],
    [{'kind': 'client_call', 'node': 'node1', 'method': 'put', 'key': 'k'}],
    [{'kind': 'client_call', 'node': 'node1'}],
    [{'kind': 'client_call', 'node': 'node1', 'method': 'put', 'key': 'k',
      'value': 'v', 'expect': 'v'}],
    [{'kind': 'apply_fault', 'fault': {'type': 'crash', 'node': 'node9'}}],
    [{'kind': 'apply_fault', 'fault': {'type': 'partition',
                                       'nodes': ['node1'], 'network': 'nw9'}}],
    [{'kind': 'apply_fault', 'name': 'all',
      'fault': {'type': 'crash', 'node': 'node1'}}],
    [{'kind': 'apply_fault', 'name': 'x',
      'fault': {'type': 'crash', 'node': 'node1'}},
     {'kind': 'apply_fault', 'name': 'x',
      'fault': {'type': 'crash', 'node': 'node2'}}],
    [{'kind': 'revert_fault', 'fault': 'split'}],
    [{'kind': 'wait_for_convergence'}],
    [{'kind': 'wait_for_convergence', 'predicate': {'type': 'equal'}}],
    [{'kind': 'assert', 'predicate': {'type': 'equal', 'key': 'k',
                                      'nodes': ['node9']}}],
    [{'kind': 'assert', 'predicate': {'type': 'sorted', 'key': 'k'}}],
    ['pause'],
])
def test_invalid_steps(steps):
    with pytest.raises(ConfigError):
        parse_scenario(two_node_document(steps))


def test_duplicate_address():
    document = two_node_document()
    document['nodes'][1]['networks']['nw2'] = '172.29.0.11'
    with pytest.raises(ConfigError):
        parse_scenario(document)


@pytest.mark.parametrize("change", [
    lambda d: d.update(nodes=[]),
    lambda d: d.update(nodes={'node1': {}}),
    lambda d: d.update(settings={'step_timeout': 'soon'}),
    lambda d: d.update(settings={'retries': 3}),
    lambda d: d['nodes'][0].pop('image'),
    lambda d: d['nodes'][0].update(volumes=['/data']),
    lambda d: d['nodes'][0].update(networks=['nw1']),
    lambda d: d['networks'][0].pop('subnet'),
    lambda d: d['networks'].append({'name': 'nw1', 'subnet': '10.0.0.0/8'}),
])
def test_invalid_document(change):
    document = two_node_document()
    change(document)
    with pytest.raises(ConfigError):
        parse_scenario(document)


def test_not_a_mapping():
    with pytest.raises(ConfigError):
        parse_scenario(['steps'])


def test_load_yaml_scenario():
    with tempfile.TemporaryDirectory() as d:
        path = os.path.join(d, 'split-brain.yaml')
        document = two_node_document(SPLIT_BRAIN)
        del document['name']
        with open(path, 'w') as f:
            yaml.safe_dump(document, f)
        scenario = load_scenario(path)
        assert scenario.name == 'split-brain'
        assert scenario.source == path
        assert len(scenario.steps) == 5


def test_load_json_scenario():
    with tempfile.TemporaryDirectory() as d:
        path = os.path.join(d, 'scenario.json')
        with open(path, 'w') as f:
            json.dump(two_node_document(SPLIT_BRAIN), f)
        assert load_scenario(path).name == 'two-nodes'


def test_load_unreadable_scenario():
    with pytest.raises(ConfigError):
        load_scenario('/nonexistent/scenario.yaml')
    with tempfile.TemporaryDirectory() as d:
        path = os.path.join(d, 'broken.yaml')
        with open(path, 'w') as f:
            f.write("steps: [unclosed\n")
        with pytest.raises(ConfigError):
            load_scenario(path)


SCENARIOS = os.path.join(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))), 'scenarios')


@pytest.mark.parametrize("name", sorted(os.listdir(SCENARIOS)))
def test_bundled_scenarios(name):
    scenario = load_scenario(os.path.join(SCENARIOS, name))
    assert scenario.steps
