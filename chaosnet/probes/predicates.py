"""
Named convergence predicates usable from scenario files.

Every predicate is a pure function of an observation: a mapping of node name
to the value that node reported (None when the key is absent).
"""
from chaosnet.common.errors import ConfigError

from typing import Callable, Dict, List


def values_equal(observation: Dict) -> bool:
    """All nodes report the same value, and the key is present."""
    values = list(observation.values())
    if not values or values[0] is None:
        return False
    return all(v == values[0] for v in values)


def value_is(expected) -> Callable[[Dict], bool]:
    expected = str(expected)

    def predicate(observation: Dict) -> bool:
        return bool(observation) and \
            all(v == expected for v in observation.values())

    return predicate


def value_absent(observation: Dict) -> bool:
    return bool(observation) and all(v is None for v in observation.values())


def value_in(choices: List) -> Callable[[Dict], bool]:
    choices = set(str(c) for c in choices)

    def predicate(observation: Dict) -> bool:
        return bool(observation) and \
            all(v in choices for v in observation.values())

    return predicate


PREDICATE_TYPES = ['equal', 'value', 'absent', 'any_value']


def build_predicate(definition: Dict) -> Callable[[Dict], bool]:
    """
    Build a predicate from its scenario file definition.

    Examples:
        {type: equal, key: animal}
        {type: value, key: animal, value: cat}
        {type: absent, key: animal}
        {type: any_value, key: animal, values: [cat, dog]}

    The key and nodes of the definition are used by the caller to build the
    observation; only the comparison is built here.

    :param definition: The predicate definition.
    :type definition: Dict
    :return: Callable[[Dict], bool]
    """
    kind = definition.get('type')
    if kind == 'equal':
        return values_equal
    if kind == 'value':
        if 'value' not in definition:
            raise ConfigError("Predicate 'value' needs a value")
        return value_is(definition['value'])
    if kind == 'absent':
        return value_absent
    if kind == 'any_value':
        values = definition.get('values')
        if not isinstance(values, list) or not values:
            raise ConfigError("Predicate 'any_value' needs a non empty list " \
                              "of values")
        return value_in(values)
    raise ConfigError("Unknown predicate type >{}<. Expected one of the " \
                      "following: {}".format(kind, ", ".join(PREDICATE_TYPES)))
