#!/usr/bin/env python3
"""
Tests for the explorer GraphQL client. HTTP is mocked.

Run: python3 -m pytest scripts/tests/test_explorer_client.py -v
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from explorer_client import ExplorerClient, ExplorerError, load_pool_registry, save_pool_registry


def response(payload):
    resp = MagicMock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = payload
    return resp


def blocks(*ids, has_next=False, cursor=None):
    return {
        "edges": [{"node": {"id": i}} for i in ids],
        "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
    }


def pools_page(pools, has_next=False, cursor=None):
    return {"data": {"allStakePools": {
        "edges": [{"node": {"id": pid, "blocks": b}} for pid, b in pools],
        "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
    }}}


@pytest.fixture
def client():
    return ExplorerClient(url="http://explorer.test/graphql", page_size=2, timeout=5, rate_limit=1000)


class TestFetchPoolRegistry:

    def test_single_page(self, client):
        with patch("explorer_client.requests.post") as post:
            post.return_value = response(pools_page([
                ("pool1", blocks("b1", "b2")),
                ("pool2", blocks("b3")),
            ]))

            registry = client.fetch_pool_registry()

        assert registry == {"pool1": {"b1", "b2"}, "pool2": {"b3"}}
        body = post.call_args.kwargs["json"]
        assert body["variables"] == {"first": 2, "after": None}
        assert post.call_args.kwargs["timeout"] == 5

    def test_follows_pool_and_block_pagination(self, client):
        with patch("explorer_client.requests.post") as post:
            post.side_effect = [
                response(pools_page(
                    [("pool1", blocks("b1", "b2", has_next=True, cursor="blk-c1"))],
                    has_next=True, cursor="pool-c1",
                )),
                response({"data": {"stakePool": {"blocks": blocks("b3", "b4", has_next=True, cursor="blk-c2")}}}),
                response({"data": {"stakePool": {"blocks": blocks("b5")}}}),
                response(pools_page([("pool2", blocks("b9"))])),
            ]

            registry = client.fetch_pool_registry()

        assert registry == {"pool1": {"b1", "b2", "b3", "b4", "b5"}, "pool2": {"b9"}}
        variables = [c.kwargs["json"]["variables"] for c in post.call_args_list]
        assert variables[1] == {"id": "pool1", "first": 2, "after": "blk-c1"}
        assert variables[2] == {"id": "pool1", "first": 2, "after": "blk-c2"}
        assert variables[3] == {"first": 2, "after": "pool-c1"}

    def test_pool_without_blocks(self, client):
        with patch("explorer_client.requests.post") as post:
            post.return_value = response(pools_page([("idle", blocks())]))
            assert client.fetch_pool_registry() == {"idle": set()}


class TestExplorerErrors:

    def test_connection_error(self, client):
        with patch("explorer_client.requests.post", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ExplorerError, match="failed"):
                client.fetch_pool_registry()

    def test_http_error(self, client):
        resp = response({})
        resp.raise_for_status.side_effect = requests.HTTPError("502 Bad Gateway")
        with patch("explorer_client.requests.post", return_value=resp):
            with pytest.raises(ExplorerError):
                client.fetch_pool_registry()

    def test_graphql_errors(self, client):
        payload = {"errors": [{"message": "Unknown field allStakePools"}]}
        with patch("explorer_client.requests.post", return_value=response(payload)):
            with pytest.raises(ExplorerError, match="Unknown field"):
                client.fetch_pool_registry()

    def test_invalid_json(self, client):
        resp = response(None)
        resp.json.side_effect = ValueError("Expecting value")
        with patch("explorer_client.requests.post", return_value=resp):
            with pytest.raises(ExplorerError):
                client.fetch_pool_registry()

    def test_missing_data(self, client):
        with patch("explorer_client.requests.post", return_value=response({"data": None})):
            with pytest.raises(ExplorerError):
                client.fetch_pool_registry()

    def test_missing_all_stake_pools(self, client):
        with patch("explorer_client.requests.post", return_value=response({"data": {"somethingElse": 1}})):
            with pytest.raises(ExplorerError, match="allStakePools"):
                client.fetch_pool_registry()

    def test_more_pages_without_cursor(self, client):
        with patch("explorer_client.requests.post", return_value=response(pools_page([], has_next=True))):
            with pytest.raises(ExplorerError, match="cursor"):
                client.fetch_pool_registry()

    def test_repeated_pool_cursor(self, client):
        page = pools_page([("pool1", blocks("b1"))], has_next=True, cursor="pool-c1")
        with patch("explorer_client.requests.post") as post:
            post.side_effect = [response(page), response(page), response(pools_page([]))]
            with pytest.raises(ExplorerError, match="cursor"):
                client.fetch_pool_registry()

        assert post.call_count == 2

    def test_repeated_block_cursor(self, client):
        first = pools_page([("pool1", blocks("b1", has_next=True, cursor="blk-c1"))])
        stuck = {"data": {"stakePool": {"blocks": blocks("b2", has_next=True, cursor="blk-c1")}}}
        with patch("explorer_client.requests.post") as post:
            post.side_effect = [response(first), response(stuck), response(stuck)]
            with pytest.raises(ExplorerError, match="cursor"):
                client.fetch_pool_registry()

        assert post.call_count == 2

    def test_unknown_stake_pool(self, client):
        with patch("explorer_client.requests.post", return_value=response({"data": {"stakePool": None}})):
            with pytest.raises(ExplorerError, match="not found"):
                client.get_pool_blocks("pool1", after="blk-c1")


class TestRateLimit:

    def test_zero_rate_limit_disables_throttling(self):
        client = ExplorerClient(url="http://explorer.test/graphql", rate_limit=0)
        assert client.min_interval == 0

    def test_zero_default_rate_limit(self):
        with patch("explorer_client.RATE_LIMIT", 0.0):
            client = ExplorerClient(url="http://explorer.test/graphql")
        assert client.min_interval == 0

    def test_rate_limit_sets_interval(self):
        client = ExplorerClient(url="http://explorer.test/graphql", rate_limit=4)
        assert client.min_interval == 0.25

    def test_no_sleep_when_unthrottled(self):
        client = ExplorerClient(url="http://explorer.test/graphql", rate_limit=0)
        with patch("explorer_client.requests.post", return_value=response(pools_page([]))), \
                patch("explorer_client.time.sleep") as sleep:
            client.fetch_pool_registry()
            client.fetch_pool_registry()
        sleep.assert_not_called()


class TestRegistryFiles:

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "pools.json"
        save_pool_registry({"pool1": {"b2", "b1"}}, path)

        assert json.loads(path.read_text()) == {"pool1": ["b1", "b2"]}
        assert load_pool_registry(path) == {"pool1": {"b1", "b2"}}

    def test_load_rejects_non_object(self, tmp_path):
        path = tmp_path / "pools.json"
        path.write_text("[1, 2]")
        with pytest.raises(ExplorerError):
            load_pool_registry(path)
