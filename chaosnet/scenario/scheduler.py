import re
import threading
import time
import uuid
from logzero import logger

from chaosnet.actions.controller import ALL, FaultController
from chaosnet.common import NodeState, StepKind, StepState, load_settings
from chaosnet.common.errors import (
    ChaosNetError,
    ConfigError,
    ConvergenceTimeout,
    FaultConflict,
    ScenarioAborted,
    StepFailed,
    StepTimeout,
)
from chaosnet.helpers import Deadline
from chaosnet.probes.client import HttpKeyValueClient
from chaosnet.probes.convergence import ConvergenceProbe, kv_observer
from chaosnet.scenario.report import (
    FAILED_OUTCOMES,
    StepReport,
    ScenarioResult,
    build_result,
    freeze,
)
from chaosnet.topology import snapshot_to_dict

from typing import Dict, List


def new_run_id(name: str) -> str:
    """
    A run id unique to one run of a scenario. Used to prefix every container
    and network name, so it only holds characters docker accepts.
    """
    slug = re.sub(r'[^a-zA-Z0-9_.-]+', '-', name).strip('-.') or 'scenario'
    return "{}-{}".format(slug[:40], uuid.uuid4().hex[:8])


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


class ScenarioScheduler(object):
    """
    Run one scenario against a fresh topology.

    Steps run strictly in order. A step that fails or times out halts the run
    unless it is best effort. A FaultConflict halts it regardless. Whatever happens, every active fault is reverted
    and the topology is torn down before run() returns its ScenarioResult.

    :param scenario: The validated scenario.
    :type scenario: chaosnet.scenario.definition.Scenario
    :param driver: Realizes the topology. Must be dedicated to this run.
    :type driver: chaosnet.driver.RuntimeDriver
    :param client: Talks to the system under test. Defaults to an
        HttpKeyValueClient over the run's topology.
    :type client: chaosnet.probes.client.KeyValueClient
    :param settings: Defaults to the scenario's own settings.
    :type settings: chaosnet.common.Settings
    :param abort: Set it (or call abort()) to cancel the run.
    :type abort: threading.Event
    """

    def __init__(self, scenario, driver, client=None, settings=None,
                 abort: threading.Event = None, run_id: str = None):
        self.scenario = scenario
        self.driver = driver
        self.client = client
        self.settings = settings or load_settings(scenario.settings)
        self._abort = abort or threading.Event()
        self.run_id = run_id or getattr(driver, 'run_id', None) or \
            new_run_id(scenario.name)
        self.topology = None
        self.controller = None
        self.probe = ConvergenceProbe(self.settings.poll_interval,
                                      self.settings.max_probe_errors,
                                      abort=self._abort)
        self._created_networks = []
        self._created_nodes = []
        self._last_observation = None
        self._step_conflicted = False

    def abort(self) -> None:
        self._abort.set()

    def run(self) -> ScenarioResult:
        started = time.monotonic()
        logger.info("Running scenario %s (run id %s) with %d step(s)",
                    self.scenario.name, self.run_id, len(self.scenario.steps))
        try:
            self.topology = self.scenario.build_topology()
        except ConfigError as e:
            logger.error("Invalid scenario %s: %s", self.scenario.name, e)
            return build_result(self.scenario.name, self.run_id, [],
                                _elapsed_ms(started), error=str(e),
                                config_error=True)
        self.controller = FaultController(self.topology, self.driver,
                                          self.settings.driver_timeout)
        if self.client is None:
            self.client = HttpKeyValueClient(
                self.topology, timeout=self.settings.client_timeout)

        scenario_deadline = Deadline(self.settings.scenario_timeout)
        steps = []
        error = None
        try:
            self._realize(scenario_deadline)
            steps = self._run_steps(scenario_deadline)
        except ChaosNetError as e:
            logger.error("Scenario %s could not be set up: %s",
                         self.scenario.name, e)
            error = "setup failed: {}".format(e)
        except Exception as e:
            # Raised below the driver, e.g. an unreadable identity file
            logger.exception(e)
            error = "setup failed: {}: {}".format(type(e).__name__, e)
        finally:
            diagnostics = {
                'topology': snapshot_to_dict(self.topology.snapshot()),
                'last_observation': self._last_observation,
            }
            revert_failures, teardown_errors = self._teardown()
            diagnostics['final_topology'] = snapshot_to_dict(
                self.topology.snapshot())
            diagnostics['teardown_errors'] = teardown_errors

        if not steps:
            steps = [self._skipped(step) for step in self.scenario.steps]
        if teardown_errors and error is None:
            error = "teardown failed: {}".format("; ".join(teardown_errors))
        return build_result(self.scenario.name, self.run_id, steps,
                            _elapsed_ms(started), error=error,
                            revert_failures=[
                                "{}: {}".format(f.fault, f.error)
                                for f in revert_failures],
                            diagnostics=diagnostics)

    def _realize(self, deadline: Deadline) -> None:
        """Create networks, then create and start every node."""
        timeout = self.settings.driver_timeout
        for network in sorted(self.topology.networks.values(),
                              key=lambda n: n.name):
            self.driver.create_network(network, timeout=deadline.bound(timeout))
            self._created_networks.append(network)
        for node in sorted(self.topology.nodes.values(), key=lambda n: n.name):
            self.driver.create_node(node, timeout=deadline.bound(timeout))
            self._created_nodes.append(node)
            for network, address in node.addresses.items():
                self.topology.attach(node.name, network, address)
            self.topology.set_state(node.name, NodeState.STOPPED)
        for node in self._created_nodes:
            self.driver.start_node(node.name, timeout=deadline.bound(timeout))
            self.topology.set_state(node.name, NodeState.RUNNING)
        logger.info("Topology of %s is up: %d network(s), %d node(s)",
                    self.scenario.name, len(self._created_networks),
                    len(self._created_nodes))

    def _teardown(self):
        """
        Revert all faults, then stop and remove what _realize created.

        Driver calls made here are bounded by the driver timeout only: the
        scenario deadline may already have passed.
        """
        revert_failures = []
        errors = []
        if self.controller is not None:
            revert_failures = self.controller.revert_all()
        if self.settings.keep_topology:
            logger.info("Keeping topology of run %s", self.run_id)
            return revert_failures, errors

        timeout = self.settings.driver_timeout
        for node in reversed(self._created_nodes):
            try:
                self.driver.stop_node(node.name, graceful=True,
                                      timeout=timeout)
                self.topology.set_state(node.name, NodeState.STOPPED)
                self.driver.remove_node(node, timeout=timeout)
                for network in list(node.attached):
                    self.topology.detach(node.name, network)
            except Exception as e:
                logger.error("Failed to remove node %s", node.name)
                logger.exception(e)
                errors.append("node {}: {}".format(node.name, e))
        for network in reversed(self._created_networks):
            try:
                self.driver.remove_network(network, timeout=timeout)
            except Exception as e:
                logger.error("Failed to remove network %s", network.name)
                logger.exception(e)
                errors.append("network {}: {}".format(network.name, e))
        self._created_nodes = []
        self._created_networks = []
        return revert_failures, errors

    def _skipped(self, step) -> StepReport:
        return StepReport(step.index, step.kind.value, step.name,
                          StepState.SKIPPED, 0, None, step.best_effort,
                          freeze({}))

    def _run_steps(self, scenario_deadline: Deadline) -> List[StepReport]:
        reports = []
        halted = False
        for step in self.scenario.steps:
            if halted:
                reports.append(self._skipped(step))
                continue
            report = self._run_step(step, scenario_deadline)
            reports.append(report)
            if report.outcome in FAILED_OUTCOMES:
                if step.best_effort and not self._step_conflicted:
                    logger.info("Best effort step %d %s. Carrying on.",
                                step.index, report.outcome.value)
                    continue
                logger.error("Step %d %s. Halting scenario %s.", step.index,
                             report.outcome.value, self.scenario.name)
                halted = True
                failures = self.controller.revert_all()
                if failures:
                    logger.error("%d fault(s) could not be reverted",
                                 len(failures))
        return reports

    def _run_step(self, step, scenario_deadline: Deadline) -> StepReport:
        started = time.monotonic()
        timeout = step.timeout or self.settings.step_timeout
        deadline = Deadline(timeout, parent=scenario_deadline)
        state = StepState.RUNNING
        logger.info("Step %d: %s%s", step.index, step.kind.value,
                    " ({})".format(step.name) if step.name else "")
        diagnostics = {}
        error = None
        self._step_conflicted = False
        try:
            if self._abort.is_set():
                raise ScenarioAborted("Scenario aborted before step {}".format(
                                      step.index))
            scenario_deadline.check("Scenario {}".format(self.scenario.name))
            diagnostics = self._dispatch(step, deadline) or {}
            deadline.check("Step {}".format(step.index))
            state = StepState.SUCCEEDED
        except (StepTimeout, ConvergenceTimeout) as e:
            state = StepState.TIMED_OUT
            error = "{}: {}".format(type(e).__name__, e)
            if isinstance(e, ConvergenceTimeout):
                diagnostics['last_observation'] = e.last_observation
                diagnostics['polls'] = e.polls
        except ChaosNetError as e:
            state = StepState.FAILED
            error = "{}: {}".format(type(e).__name__, e)
            # Halts even a best effort step
            self._step_conflicted = isinstance(e, FaultConflict)
            if isinstance(e, StepFailed):
                diagnostics['observation'] = e.observation
        except Exception as e:
            # Not expected from any step. Reported like any other failure.
            logger.exception(e)
            state = StepState.FAILED
            error = "{}: {}".format(type(e).__name__, e)

        if state != StepState.SUCCEEDED:
            logger.error("Step %d %s: %s", step.index, state.value, error)
            diagnostics['topology'] = snapshot_to_dict(self.topology.snapshot())
        else:
            logger.info("Step %d succeeded", step.index)
        return StepReport(step.index, step.kind.value, step.name, state,
                          _elapsed_ms(started), error, step.best_effort,
                          freeze(diagnostics))

    def _dispatch(self, step, deadline: Deadline) -> Dict:
        handlers = {
            StepKind.CLIENT_CALL: self._client_call,
            StepKind.APPLY_FAULT: self._apply_fault,
            StepKind.REVERT_FAULT: self._revert_fault,
            StepKind.WAIT_FOR_CONVERGENCE: self._wait_for_convergence,
            StepKind.ASSERT: self._assert,
            StepKind.PAUSE: self._pause,
        }
        return handlers[step.kind](step.params, deadline)

    def _client_call(self, params: Dict, deadline: Deadline) -> Dict:
        node = params['node']
        key = params['key']
        method = params['method']
        timeout = deadline.bound(self.settings.client_timeout)
        if method == 'put':
            self.client.put(node, key, params['value'], timeout=timeout)
            return {'node': node, 'key': key, 'value': params['value']}
        if method == 'delete':
            self.client.delete(node, key, timeout=timeout)
            return {'node': node, 'key': key}
        value = self.client.get(node, key, timeout=timeout)
        self._last_observation = {node: value}
        if 'expect' in params and value != params['expect']:
            raise StepFailed("{} returned {!r} for {}, expected {!r}".format(
                             node, value, key, params['expect']),
                             observation={node: value})
        return {'node': node, 'key': key, 'value': value}

    def _apply_fault(self, params: Dict, deadline: Deadline) -> Dict:
        record = self.controller.apply(params['fault'],
                                       label=params.get('label'),
                                       deadline=deadline)
        return {'fault': params['fault'].to_dict(),
                'actions': len(record.plan.forward)}

    def _revert_fault(self, params: Dict, deadline: Deadline) -> Dict:
        target = params['fault']
        if target == ALL:
            failures = self.controller.revert_all(deadline)
            if failures:
                raise StepFailed("{} fault(s) could not be reverted: " \
                                 "{}".format(len(failures), "; ".join(
                                 "{}: {}".format(f.fault, f.error)
                                 for f in failures)))
            return {'reverted': ALL}
        reverted = self.controller.revert(target, deadline=deadline)
        return {'reverted': str(target), 'was_active': reverted}

    def _observer(self, params: Dict, deadline: Deadline):
        return kv_observer(self.client, params['nodes'], params['key'],
                           timeout=self.settings.client_timeout,
                           deadline=deadline)

    def _wait_for_convergence(self, params: Dict, deadline: Deadline) -> Dict:
        observe = self._observer(params, deadline)

        def recording_observe():
            self._last_observation = observe()
            return self._last_observation

        result = self.probe.wait_until(params['predicate'], recording_observe,
                                       deadline)
        return {'polls': result.polls, 'errors': result.errors,
                'observation': result.observation}

    def _assert(self, params: Dict, deadline: Deadline) -> Dict:
        observation = self._observer(params, deadline)()
        self._last_observation = observation
        if not params['predicate'](observation):
            raise StepFailed("Assertion {} does not hold for {}".format(
                             params['definition'], observation),
                             observation=observation)
        return {'observation': observation}

    def _pause(self, params: Dict, deadline: Deadline) -> Dict:
        seconds = params['seconds']
        remaining = deadline.remaining()
        wait = seconds if remaining is None else min(seconds, remaining)
        if self._abort.wait(wait):
            raise ScenarioAborted("Scenario aborted while pausing")
        if wait < seconds:
            raise StepTimeout("Pause of {}s exceeds the step deadline".format(
                              seconds))
        return {'seconds': seconds}
