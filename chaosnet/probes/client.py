import abc
import requests
from logzero import logger

from chaosnet.common import DEFAULT_CHAOSNET_CLIENT_TIMEOUT, \
    DEFAULT_CHAOSNET_KV_PATH
from chaosnet.common.errors import ClientError, ConfigError

from typing import Union


class KeyValueClient(metaclass=abc.ABCMeta):
    """
    Application level requests against a node of the system under test.

    Implementations raise ClientError when the node cannot be reached or
    answers with an error. Every call is bounded by timeout seconds.
    """

    @abc.abstractmethod
    def put(self, node: str, key: str, value: str, timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, node: str, key: str, timeout=None) -> Union[str, None]:
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, node: str, key: str, timeout=None) -> None:
        raise NotImplementedError


class HttpKeyValueClient(KeyValueClient):
    """
    Talk to nodes exposing a key/value store over HTTP.

    PUT/POST of the raw value to <endpoint><path>, GET returns the raw value
    (404 means absent), DELETE removes it.

    :param topology: Resolves node names to their client endpoint.
    :type topology: chaosnet.topology.Topology
    :param path: Path template formatted with the key.
        Optional. (Default: chaosnet.common.DEFAULT_CHAOSNET_KV_PATH)
    :type path: str
    :param write_method: HTTP method used by put.
        Optional. (Default: POST)
    :type write_method: str
    :param timeout: Default per request timeout in seconds.
        Optional. (Default: chaosnet.common.DEFAULT_CHAOSNET_CLIENT_TIMEOUT)
    :type timeout: Union[int, float]
    """

    def __init__(self, topology, path: str = DEFAULT_CHAOSNET_KV_PATH,
                 write_method: str = 'POST',
                 timeout=DEFAULT_CHAOSNET_CLIENT_TIMEOUT, session=None):
        self.topology = topology
        self.path = path
        self.write_method = write_method.upper()
        self.timeout = timeout
        self.session = session or requests.Session()

    def url(self, node: str, key: str) -> str:
        endpoint = self.topology.node(node).client_endpoint()
        if not endpoint:
            raise ConfigError("Node {} has no client endpoint".format(node))
        return endpoint.rstrip('/') + self.path.format(key=key)

    def _request(self, method: str, node: str, key: str, timeout=None,
                 data: str = None) -> requests.Response:
        url = self.url(node, key)
        timeout = self.timeout if timeout is None else timeout
        logger.debug("%s %s (timeout %ss)", method, url, timeout)
        try:
            response = self.session.request(method, url, data=data,
                                            timeout=timeout)
        except requests.exceptions.RequestException as e:
            raise ClientError("{} {} failed: {}".format(method, url, e),
                              node=node)
        if response.status_code == 404 and method in ('GET', 'DELETE'):
            return response
        if response.status_code >= 400:
            raise ClientError("{} {} returned {}: {}".format(
                              method, url, response.status_code,
                              response.text.strip()),
                              node=node, status_code=response.status_code)
        return response

    def put(self, node: str, key: str, value: str, timeout=None) -> None:
        self._request(self.write_method, node, key, timeout,
                      data=str(value).encode('utf-8'))

    def get(self, node: str, key: str, timeout=None) -> Union[str, None]:
        response = self._request('GET', node, key, timeout)
        if response.status_code == 404:
            return None
        return response.text.strip()

    def delete(self, node: str, key: str, timeout=None) -> None:
        self._request('DELETE', node, key, timeout)
