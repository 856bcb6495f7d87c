from functools import partial
from logzero import logger
from multiprocessing import Pool

from chaosnet.common import load_settings
from chaosnet.common.errors import ConfigError
from chaosnet.driver import DockerDriver
from chaosnet.scenario.definition import load_scenario
from chaosnet.scenario.report import (
    ScenarioResult,
    build_result,
    format_result,
    freeze_result,
    thaw_result,
    write_report,
)
from chaosnet.scenario.scheduler import ScenarioScheduler, new_run_id

from os.path import basename, splitext
from typing import Callable, Dict, List


def run_scenario_file(path: str, docker_host: str = None,
                      ssh_config_file: str = None, identity_file: str = None,
                      overrides: Dict = None, report_dir: str = None,
                      driver_factory: Callable = None,
                      client_factory: Callable = None) -> ScenarioResult:
    """
    Load, validate and run one scenario file.

    A scenario that fails validation still yields a result (with the
    configuration error exit code) and never reaches the runtime driver.

    :param path: The relative or absolute path to the scenario file.
    :type path: str
    :param docker_host: ssh alias/hostname of the docker host. The local engine
        is used when None.
    :type docker_host: str
    :param ssh_config_file: The relative or absolute path to the SSH config
        file. Only used with docker_host.
    :type ssh_config_file: str
    :param identity_file: Private key used to reach docker_host.
    :type identity_file: str
    :param overrides: Settings taking precedence over the scenario's own.
    :type overrides: Dict
    :param report_dir: Where to write the JSON report. No report is written
        when None.
    :type report_dir: str
    :param driver_factory: Builds the runtime driver from (run_id, settings).
        Defaults to a DockerDriver.
    :type driver_factory: Callable
    :param client_factory: Builds the client from the run's topology.
        Defaults to an HttpKeyValueClient.
    :type client_factory: Callable
    :return: ScenarioResult
    """
    fallback_name = splitext(basename(path))[0]
    try:
        scenario = load_scenario(path)
        settings = load_settings(scenario.settings, overrides)
    except ConfigError as e:
        logger.error("Invalid scenario %s: %s", path, e)
        result = build_result(fallback_name, new_run_id(fallback_name), [], 0,
                              error=str(e), config_error=True)
        logger.info(format_result(result))
        if report_dir:
            write_report(result, report_dir)
        return result

    run_id = new_run_id(scenario.name)
    if driver_factory is None:
        driver = DockerDriver.for_host(run_id, host=docker_host,
                                       ssh_config_file=ssh_config_file,
                                       identity_file=identity_file,
                                       timeout=settings.driver_timeout,
                                       retries=settings.driver_retries,
                                       backoff=settings.retry_backoff)
    else:
        driver = driver_factory(run_id, settings)
    scheduler = ScenarioScheduler(scenario, driver, settings=settings,
                                  run_id=run_id)
    if client_factory is not None:
        scheduler.client = client_factory(scenario, settings)
    result = scheduler.run()
    logger.info(format_result(result))
    if report_dir:
        report = write_report(result, report_dir)
        logger.info("Report written to %s", report)
    return result


def _run_in_worker(path: str, **kwargs) -> ScenarioResult:
    return thaw_result(run_scenario_file(path, **kwargs))


def run_scenarios(paths: List[str], processes: int = 1,
                  **kwargs) -> List[ScenarioResult]:
    """
    Run several scenario files, in parallel worker processes when
    processes > 1. Each run has its own run id, hence its own containers and
    networks.

    :param paths: Scenario files.
    :type paths: List[str]
    :param processes: Maximum number of scenarios running at once.
    :type processes: int
    :param kwargs: Passed on to run_scenario_file.
    :return: List[ScenarioResult] in the order of paths
    """
    processes = int(processes)
    if processes <= 1 or len(paths) <= 1:
        return [run_scenario_file(path, **kwargs) for path in paths]
    logger.info("Running %d scenarios, %d at a time", len(paths), processes)
    with Pool(processes=min(processes, len(paths))) as pool:
        results = pool.map(partial(_run_in_worker, **kwargs), paths)
    return [freeze_result(r) for r in results]


def worst_exit_code(results: List[ScenarioResult]) -> int:
    return max([r.exit_code for r in results] or [0])
