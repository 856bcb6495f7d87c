#!/usr/bin/env python3

import sys
import os
import argparse
import logging

import logzero
from logzero import logger

from chaosnet.common import (
    DEFAULT_CHAOSNET_SSH_CONFIG_FILE,
    get_chaos_temp_dir,
    remove_chaos_temp_dir,
)
from chaosnet.scenario.runner import run_scenarios, worst_exit_code


# Command-line Argument Parsing
def str2bool(v):
    if v.lower() in ('yes', 'true', 't', 'y', '1'):
        return True
    elif v.lower() in ('no', 'false', 'f', 'n', '0'):
        return False
    else:
        raise argparse.ArgumentTypeError(
            'Boolean value (yes, no, true, false, y, n, 1, or 0) expected.')


def positive_number(v):
    try:
        number = float(v)
    except ValueError:
        raise argparse.ArgumentTypeError('A number expected. Got {}'.format(v))
    if number <= 0:
        raise argparse.ArgumentTypeError('A positive number expected.')
    return number


def scenario_file(v):
    path = os.path.expanduser(v)
    if not os.path.isfile(path):
        raise argparse.ArgumentTypeError(
            'Scenario file {} does not exist.'.format(v))
    return path


LOG_LEVEL_HELP = """Logging level.
                      [LOG-LEVEL]: notset, debug, info, warning, error, critical
                      Default: info"""
levels = {
    'notset': logging.NOTSET,
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL
}


def log_level(v):
    if v.lower() in levels.keys():
        return levels[v.lower()]
    else:
        raise argparse.ArgumentTypeError(
            'Expected one of the following: {}.'.format(
                 ', '.join(levels.keys())))


def program_args():
    parser = argparse.ArgumentParser(
        description='Run distributed test scenarios against containerized ' \
                    'topologies, injecting faults and checking convergence.')

    parser.add_argument('scenarios', type=scenario_file, nargs='+',
                        help='One or more YAML (or JSON) scenario files. ' \
                        'Each scenario declares networks, nodes and an ' \
                        'ordered list of steps.')

    parser.add_argument('--docker-host', help='ssh alias/hostname of the ' \
                        'host running the docker engine. Default: the local ' \
                        'docker engine.', default=None)

    parser.add_argument('--ssh-config-file', help='The relative or absolute ' \
                        'path to the SSH config file used to reach ' \
                        '--docker-host. Default: ~/.ssh/config',
                        default=DEFAULT_CHAOSNET_SSH_CONFIG_FILE)

    parser.add_argument('--identity-file', help='Private key used to reach ' \
                        '--docker-host. Default: None', default=None)

    parser.add_argument('--report-dir', help='Directory in which to write ' \
                        'one JSON report per scenario run. Default: the ' \
                        'temporary directory of this invocation.',
                        default=None)

    parser.add_argument('--parallel', type=int, help='Maximum number of ' \
                        'scenarios to run at once. Each run gets its own ' \
                        'containers and networks. Default: 1', default=1)

    parser.add_argument('--keep-topology', type=str2bool, help='Leave ' \
                        'containers and networks in place after each run ' \
                        '(faults are still reverted). Default: N Options ' \
                        '(case insensitive): y, yes, true, 1, n, no, false, 0',
                        nargs='?', const='Y', default=None)

    parser.add_argument('--step-timeout', type=positive_number, help='Default ' \
                        'per step timeout in seconds. Overrides the ' \
                        'scenario\'s own setting. Default: None',
                        default=None)

    parser.add_argument('--scenario-timeout', type=positive_number,
                        help='Overall timeout of each scenario in seconds. ' \
                        'Overrides the scenario\'s own setting. Default: None',
                        default=None)

    parser.add_argument('-c', '--cleanup', type=str2bool, help='Each call to ' \
                        'this script creates a temporary directory holding ' \
                        'the log file and, unless --report-dir is given, the ' \
                        'reports. Should this temporary directory be deleted ' \
                        'when this script exits? Default: N Options (case ' \
                        'insensitive): y, yes, true, 1, n, no, false, 0',
                        nargs='?', const='Y', default='N')

    parser.add_argument('-l', '--log-level', type=log_level, nargs='?',
                        const=logging.INFO, default=logging.INFO,
                        help=LOG_LEVEL_HELP)

    return parser


def parse_args(argv=None, parser=program_args()):
    return parser.parse_args(args=argv)


def overrides(args):
    return {
        'keep_topology': args.keep_topology,
        'scenario_timeout': args.scenario_timeout,
        'step_timeout': args.step_timeout,
    }


def init(args):
    logzero.loglevel(args.log_level)
    work_dir = get_chaos_temp_dir()
    logzero.logfile(os.path.join(work_dir, "chaosnet.log"),
                    loglevel=logging.DEBUG)
    logger.debug("Initializing...")
    logger.debug("args: %s", args)
    return work_dir


def main(args):
    work_dir = init(args)
    report_dir = args.report_dir or os.path.join(work_dir, "reports")
    results = run_scenarios(args.scenarios, processes=args.parallel,
                            docker_host=args.docker_host,
                            ssh_config_file=args.ssh_config_file,
                            identity_file=args.identity_file,
                            overrides=overrides(args),
                            report_dir=report_dir)
    for result in results:
        logger.info("%s: %s (exit code %d)", result.scenario,
                    result.verdict.value, result.exit_code)
    exit_code = worst_exit_code(results)
    if args.report_dir is None and args.cleanup:
        logger.warning("Removing %s, including the reports written there",
                       work_dir)
    # Stop writing to a file inside the directory before removing it
    logzero.logfile(None)
    remove_chaos_temp_dir(args.cleanup)
    return exit_code


if __name__ == '__main__':
    sys.exit(main(parse_args()))
