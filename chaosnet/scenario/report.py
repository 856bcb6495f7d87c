"""
Scenario reports.

A ScenarioResult is produced for every run, including runs that never got
past validation or that were aborted, so every run maps to an exit code.
"""
import json
from collections import namedtuple
from os import makedirs
from os.path import join
from types import MappingProxyType

from chaosnet.common import StepState, Verdict

from typing import Dict, List

StepReport = namedtuple('StepReport', ['index', 'kind', 'name', 'outcome',
                                       'elapsed_ms', 'error', 'best_effort',
                                       'diagnostics'])

ScenarioResult = namedtuple('ScenarioResult', ['scenario', 'run_id', 'verdict',
                                               'steps', 'elapsed_ms', 'error',
                                               'revert_failures',
                                               'diagnostics', 'exit_code'])

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_SETUP_ERROR = 3
EXIT_STEP_BASE = 10
EXIT_MAX = 255

FAILED_OUTCOMES = (StepState.FAILED, StepState.TIMED_OUT)


def freeze(value):
    if isinstance(value, (dict, MappingProxyType)):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, set, frozenset, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def first_failure(steps: List[StepReport]):
    for step in steps:
        if step.outcome in FAILED_OUTCOMES and not step.best_effort:
            return step
    return None


def build_result(scenario: str, run_id: str, steps: List[StepReport],
                 elapsed_ms: int, error: str = None, config_error: bool = False,
                 revert_failures: List[str] = None,
                 diagnostics: Dict = None) -> ScenarioResult:
    """
    Aggregate per step outcomes into the run's immutable result.

    The verdict is FAILED when a step that is not best effort failed or timed
    out, when setup/teardown failed (error), or when some fault could not be
    reverted.

    :param config_error: True when the scenario was rejected during
        validation. Selects the configuration error exit code.
    :type config_error: bool
    :return: ScenarioResult
    """
    steps = tuple(steps)
    revert_failures = tuple(revert_failures or ())
    failed = first_failure(steps)
    if config_error:
        code = EXIT_CONFIG_ERROR
    elif failed is not None:
        code = min(EXIT_STEP_BASE + failed.index, EXIT_MAX)
    elif error is not None or revert_failures:
        code = EXIT_SETUP_ERROR
    else:
        code = EXIT_OK
    verdict = Verdict.PASSED if code == EXIT_OK else Verdict.FAILED
    return ScenarioResult(scenario=scenario, run_id=run_id, verdict=verdict,
                          steps=steps, elapsed_ms=int(elapsed_ms),
                          error=error, revert_failures=revert_failures,
                          diagnostics=freeze(diagnostics or {}),
                          exit_code=code)


def exit_code(result: ScenarioResult) -> int:
    return result.exit_code


def thaw(value):
    if isinstance(value, MappingProxyType):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def result_to_dict(result: ScenarioResult) -> Dict:
    return {
        'scenario': result.scenario,
        'run_id': result.run_id,
        'verdict': result.verdict.value,
        'exit_code': result.exit_code,
        'elapsed_ms': result.elapsed_ms,
        'error': result.error,
        'revert_failures': list(result.revert_failures),
        'steps': [{
            'index': s.index,
            'kind': s.kind,
            'name': s.name,
            'outcome': s.outcome.value,
            'elapsed_ms': s.elapsed_ms,
            'error': s.error,
            'best_effort': s.best_effort,
            'diagnostics': thaw(s.diagnostics),
        } for s in result.steps],
        'diagnostics': thaw(result.diagnostics),
    }


def write_report(result: ScenarioResult, directory: str) -> str:
    """
    Write the result as JSON to <directory>/<scenario>-<run id>.json

    :return: str path of the report
    """
    makedirs(directory, exist_ok=True)
    path = join(directory, "{}-{}.json".format(result.scenario, result.run_id))
    with open(path, 'w') as f:
        json.dump(result_to_dict(result), f, indent=2, sort_keys=True,
                  default=str)
    return path


def format_result(result: ScenarioResult) -> str:
    """One line per step, preceded by the verdict."""
    lines = ["Scenario {} ({}): {} in {}ms, exit code {}".format(
             result.scenario, result.run_id, result.verdict.value.upper(),
             result.elapsed_ms, result.exit_code)]
    for s in result.steps:
        line = "  [{:>3}] {:<22} {:<10} {:>8}ms".format(
               s.index, s.kind + (" " + s.name if s.name else ""),
               s.outcome.value, s.elapsed_ms)
        if s.best_effort:
            line += " (best effort)"
        if s.error:
            line += " -- {}".format(s.error)
        lines.append(line)
    if result.error:
        lines.append("  error: {}".format(result.error))
    for failure in result.revert_failures:
        lines.append("  not reverted: {}".format(failure))
    return "\n".join(lines)


def thaw_result(result: ScenarioResult) -> ScenarioResult:
    """
    Same result with plain dict diagnostics, so it can cross a process
    boundary. freeze_result undoes it.
    """
    return result._replace(
        diagnostics=thaw(result.diagnostics),
        steps=tuple(s._replace(diagnostics=thaw(s.diagnostics))
                    for s in result.steps))


def freeze_result(result: ScenarioResult) -> ScenarioResult:
    return result._replace(
        diagnostics=freeze(result.diagnostics),
        steps=tuple(s._replace(diagnostics=freeze(s.diagnostics))
                    for s in result.steps))
