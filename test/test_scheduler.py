import threading
import time

from chaosnet.common import NodeState, StepState, Verdict
from chaosnet.common.errors import ClientError, RuntimeDriverError
from chaosnet.scenario.definition import Scenario, parse_scenario
from chaosnet.scenario.scheduler import ScenarioScheduler, new_run_id

from test.fakes import FakeKeyValueCluster, RecordingDriver, two_node_document


PARTITION = {'type': 'partition', 'nodes': ['node1', 'node2'],
             'network': 'nw2'}

SPLIT_BRAIN = [
    {'kind': 'apply_fault', 'name': 'split', 'fault': PARTITION},
    {'kind': 'client_call', 'node': 'node1', 'method': 'put', 'key': 'animal',
     'value': 'dog'},
    {'kind': 'client_call', 'node': 'node2', 'method': 'put', 'key': 'animal',
     'value': 'cat'},
    {'kind': 'revert_fault', 'fault': 'split'},
    {'kind': 'wait_for_convergence', 'timeout': 10,
     'predicate': {'type': 'equal', 'key': 'animal'}},
]


def run(steps, driver=None, **settings):
    scenario = parse_scenario(two_node_document(steps, **settings))
    driver = driver or RecordingDriver()
    cluster = FakeKeyValueCluster(driver)
    scheduler = ScenarioScheduler(scenario, driver, client=cluster)
    return scheduler.run(), driver, cluster


def outcomes(result):
    return [s.outcome for s in result.steps]


def test_split_brain_converges():
    result, driver, cluster = run(SPLIT_BRAIN)
    assert result.verdict == Verdict.PASSED
    assert result.exit_code == 0
    assert outcomes(result) == [StepState.SUCCEEDED] * 5
    assert result.error is None
    # Last writer wins once the partition heals
    assert result.steps[4].diagnostics['observation'] == {'node1': 'cat',
                                                          'node2': 'cat'}
    assert cluster.stores['node1']['animal'][1] == 'cat'
    assert cluster.stores['node2']['animal'][1] == 'cat'


def test_topology_lifecycle():
    result, driver, cluster = run(SPLIT_BRAIN)
    methods = [c[0] for c in driver.calls]
    assert methods[:6] == ['create_network', 'create_network', 'create_node',
                           'create_node', 'start_node', 'start_node']
    assert methods[-6:] == ['stop_node', 'remove_node', 'stop_node',
                            'remove_node', 'remove_network', 'remove_network']
    # Nothing left behind
    assert driver.containers == {}
    assert driver.networks == set()
    final = result.diagnostics['final_topology']
    assert final['nodes']['node1']['state'] == 'STOPPED'
    assert list(final['networks']['nw2']['members']) == []


def test_keep_topology():
    result, driver, cluster = run(SPLIT_BRAIN, keep_topology=True)
    assert result.exit_code == 0
    assert driver.calls_to('remove_node') == []
    assert sorted(driver.containers) == ['node1', 'node2']


def test_crash_then_get_halts():
    steps = [
        {'kind': 'apply_fault', 'fault': {'type': 'crash', 'node': 'node1'}},
        {'kind': 'client_call', 'node': 'node1', 'key': 'animal'},
        {'kind': 'client_call', 'node': 'node2', 'method': 'put',
         'key': 'animal', 'value': 'cat'},
    ]
    started = time.monotonic()
    result, driver, cluster = run(steps)
    assert time.monotonic() - started < 5
    assert result.verdict == Verdict.FAILED
    assert outcomes(result) == [StepState.SUCCEEDED, StepState.FAILED,
                                StepState.SKIPPED]
    assert result.exit_code == 11
    assert 'ClientError' in result.steps[1].error
    assert result.steps[1].diagnostics['topology']['nodes']['node1'][
        'state'] == 'CRASHED'
    # Skipped step never ran
    assert ('put', 'node2', 'animal', 'cat') not in cluster.requests

    kill = driver.calls.index(('stop_node', 'node1', False))
    restart = driver.calls.index(('start_node', 'node1'), kill)
    stop = driver.calls.index(('stop_node', 'node1', True))
    assert kill < restart < stop
    final = result.diagnostics['final_topology']
    assert final['nodes']['node1']['state'] == NodeState.STOPPED.name


def test_failed_step_reverts_before_teardown():
    steps = [
        {'kind': 'apply_fault', 'name': 'split', 'fault': PARTITION},
        {'kind': 'client_call', 'node': 'node1', 'key': 'animal',
         'expect': 'dog'},
    ]
    result, driver, cluster = run(steps)
    assert outcomes(result) == [StepState.SUCCEEDED, StepState.FAILED]
    assert result.steps[1].diagnostics['observation'] == {'node1': None}
    assert result.exit_code == 11
    assert result.revert_failures == ()
    attaches = [c for c in driver.calls if c[0] == 'attach_network']
    first_stop = driver.calls.index(('stop_node', 'node2', True))
    assert len(attaches) == 2
    assert all(driver.calls.index(a) < first_stop for a in attaches)


def test_convergence_timeout():
    steps = [
        {'kind': 'apply_fault', 'fault': PARTITION},
        {'kind': 'client_call', 'node': 'node1', 'method': 'put',
         'key': 'animal', 'value': 'dog'},
        {'kind': 'wait_for_convergence', 'timeout': 0.2,
         'predicate': {'type': 'equal', 'key': 'animal'}},
        {'kind': 'revert_fault', 'fault': 'all'},
    ]
    result, driver, cluster = run(steps)
    assert outcomes(result) == [StepState.SUCCEEDED, StepState.SUCCEEDED,
                                StepState.TIMED_OUT, StepState.SKIPPED]
    assert result.exit_code == 12
    wait = result.steps[2]
    assert wait.elapsed_ms >= 200
    assert wait.diagnostics['last_observation'] == {'node1': 'dog',
                                                    'node2': None}
    assert result.diagnostics['last_observation'] == {'node1': 'dog',
                                                      'node2': None}
    # Reverted on halt
    assert len(driver.calls_to('attach_network')) == 2


def test_best_effort_failure_carries_on():
    steps = [
        {'kind': 'client_call', 'node': 'node1', 'key': 'animal',
         'expect': 'dog', 'best_effort': True},
        {'kind': 'client_call', 'node': 'node1', 'method': 'put',
         'key': 'animal', 'value': 'dog'},
        {'kind': 'assert', 'predicate': {'type': 'value', 'key': 'animal',
                                         'value': 'dog'}},
    ]
    result, driver, cluster = run(steps)
    assert outcomes(result) == [StepState.FAILED, StepState.SUCCEEDED,
                                StepState.SUCCEEDED]
    assert result.verdict == Verdict.PASSED
    assert result.exit_code == 0


def test_assert_failure():
    steps = [
        {'kind': 'client_call', 'node': 'node1', 'method': 'put',
         'key': 'animal', 'value': 'dog'},
        {'kind': 'assert', 'predicate': {'type': 'absent', 'key': 'animal'}},
    ]
    result, driver, cluster = run(steps)
    assert outcomes(result) == [StepState.SUCCEEDED, StepState.FAILED]
    assert 'StepFailed' in result.steps[1].error


def test_fault_conflict_fails_step():
    crash = {'kind': 'apply_fault', 'fault': {'type': 'crash',
                                              'node': 'node1'}}
    result, driver, cluster = run([crash, crash])
    assert outcomes(result) == [StepState.SUCCEEDED, StepState.FAILED]
    assert 'FaultConflict' in result.steps[1].error
    assert len(driver.calls_to('start_node')) == 3


def test_scenario_timeout():
    steps = [
        {'kind': 'pause', 'seconds': 5},
        {'kind': 'pause', 'seconds': 0},
    ]
    result, driver, cluster = run(steps, scenario_timeout=0.3,
                                  step_timeout=10)
    assert outcomes(result) == [StepState.TIMED_OUT, StepState.SKIPPED]
    assert result.exit_code == 10
    # Teardown still ran
    assert driver.containers == {}


def test_abort():
    steps = [
        {'kind': 'apply_fault', 'fault': {'type': 'crash', 'node': 'node2'}},
        {'kind': 'pause', 'seconds': 30},
        {'kind': 'pause', 'seconds': 0},
    ]
    scenario = parse_scenario(two_node_document(steps, step_timeout=60,
                                                scenario_timeout=120))
    driver = RecordingDriver()
    scheduler = ScenarioScheduler(scenario, driver,
                                  client=FakeKeyValueCluster(driver))
    timer = threading.Timer(0.2, scheduler.abort)
    timer.start()
    started = time.monotonic()
    try:
        result = scheduler.run()
    finally:
        timer.cancel()
    assert time.monotonic() - started < 10
    assert outcomes(result) == [StepState.SUCCEEDED, StepState.FAILED,
                                StepState.SKIPPED]
    assert 'ScenarioAborted' in result.steps[1].error
    # The crash was reverted
    assert result.diagnostics['final_topology']['nodes']['node2'][
        'state'] == 'STOPPED'
    assert len(driver.calls_to('start_node')) == 3


def test_setup_failure():
    driver = RecordingDriver()
    driver.fail('start_node', 'node2')
    result, driver, cluster = run(SPLIT_BRAIN, driver=driver)
    assert result.exit_code == 3
    assert result.verdict == Verdict.FAILED
    assert result.error.startswith('setup failed')
    assert outcomes(result) == [StepState.SKIPPED] * 5
    assert driver.containers == {}
    assert driver.networks == set()


def test_teardown_failure():
    driver = RecordingDriver()
    driver.fail('remove_network', 'nw1')
    result, driver, cluster = run(SPLIT_BRAIN, driver=driver)
    assert outcomes(result) == [StepState.SUCCEEDED] * 5
    assert result.exit_code == 3
    assert 'teardown failed' in result.error
    assert list(result.diagnostics['teardown_errors']) == [
        'network nw1: remove_network nw1 failed']


class NoRestartDriver(RecordingDriver):
    """Containers never come back once stopped."""

    def start_node(self, node, timeout=None):
        if self.calls_to('stop_node'):
            self._record('start_node', node)
            raise RuntimeDriverError("container {} is dead".format(node))
        super().start_node(node, timeout)


def test_revert_failure():
    steps = [
        {'kind': 'apply_fault', 'name': 'crash',
         'fault': {'type': 'crash', 'node': 'node1'}},
    ]
    result, driver, cluster = run(steps, driver=NoRestartDriver())
    assert outcomes(result) == [StepState.SUCCEEDED]
    assert result.verdict == Verdict.FAILED
    assert result.exit_code == 3
    assert len(result.revert_failures) == 1
    assert 'dead' in result.revert_failures[0]
    # Teardown still removes everything
    assert driver.containers == {}


def test_invalid_topology_makes_no_driver_call():
    document = two_node_document()
    scenario = Scenario('broken', document['networks'],
                        [dict(document['nodes'][0]),
                         dict(document['nodes'][0])], [])
    driver = RecordingDriver()
    result = ScenarioScheduler(scenario, driver,
                               client=FakeKeyValueCluster(driver)).run()
    assert result.exit_code == 2
    assert driver.calls == []


def test_run_id():
    run_id = new_run_id('split brain/1')
    assert run_id.startswith('split-brain-1-')
    assert new_run_id('split brain/1') != run_id
    assert new_run_id('///').startswith('scenario-')


def test_unexpected_setup_error_is_reported():
    driver = RecordingDriver()
    driver.fail('start_node', 'node2',
                error=OSError('identity file unreadable'))
    result, driver, cluster = run(SPLIT_BRAIN, driver=driver)
    assert result.exit_code == 3
    assert result.error == 'setup failed: OSError: identity file unreadable'
    assert outcomes(result) == [StepState.SKIPPED] * 5
    assert driver.containers == {}
    assert driver.networks == set()


def test_unexpected_teardown_error_is_reported():
    driver = RecordingDriver()
    driver.fail('remove_node', 'node2', error=OSError('socket closed'))
    result, driver, cluster = run(SPLIT_BRAIN, driver=driver)
    assert outcomes(result) == [StepState.SUCCEEDED] * 5
    assert result.exit_code == 3
    assert list(result.diagnostics['teardown_errors']) == [
        'node node2: socket closed']
    # The rest is still removed
    assert sorted(driver.containers) == ['node2']
    assert driver.networks == set()


def test_best_effort_fault_conflict_halts():
    crash = {'kind': 'apply_fault', 'fault': {'type': 'crash',
                                              'node': 'node1'}}
    steps = [crash, dict(crash, best_effort=True),
             {'kind': 'pause', 'seconds': 0}]
    result, driver, cluster = run(steps)
    assert outcomes(result) == [StepState.SUCCEEDED, StepState.FAILED,
                                StepState.SKIPPED]
    assert result.exit_code == 11
    assert 'FaultConflict' in result.steps[1].error
    # Reverted on halt, before teardown
    methods = [c[0] for c in driver.calls]
    assert methods.count('start_node') == 3
    starts = [i for i, m in enumerate(methods) if m == 'start_node']
    assert starts[2] < methods.index('remove_node')


class StallingCluster(FakeKeyValueCluster):
    """Answers the first read, then hangs for the whole timeout of each."""

    def __init__(self, driver):
        super().__init__(driver)
        self.timeouts = []

    def get(self, node, key, timeout=None):
        self.timeouts.append(timeout)
        if len(self.timeouts) == 1:
            return super().get(node, key, timeout)
        time.sleep(timeout)
        raise ClientError("{} did not answer within {}s".format(node, timeout))


def test_convergence_wait_stays_within_step_timeout():
    steps = [
        {'kind': 'wait_for_convergence', 'timeout': 0.5,
         'predicate': {'type': 'equal', 'key': 'animal'}},
    ]
    scenario = parse_scenario(two_node_document(steps, client_timeout=5))
    driver = RecordingDriver()
    cluster = StallingCluster(driver)
    result = ScenarioScheduler(scenario, driver, client=cluster).run()
    assert outcomes(result) == [StepState.TIMED_OUT]
    assert result.steps[0].elapsed_ms < 1500
    assert max(cluster.timeouts) <= 0.5
