from __future__ import annotations

import pytest
from azure.core import MatchConditions
from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError
from azure.data.tables import UpdateMode as AzureUpdateMode

from lrsstore.core.errors import NotFoundError, TransientStoreError
from lrsstore.persistence.store import ETAG_KEY, AzureTableStore, UpdateMode
from lrsstore.services.telemetry import store_latency_by_table


class _SdkEntity(dict):
    def __init__(self, *args, etag: str, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.metadata = {"etag": etag}


class FakeTableClient:
    # Records SDK calls; rows are keyed by (PartitionKey, RowKey).
    def __init__(self) -> None:
        self.table_name = "CourseAttempts"
        self.rows: dict[tuple[str, str], dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None

    async def get_entity(self, partition_key: str, row_key: str):
        self.calls.append(("get_entity", {"partition_key": partition_key, "row_key": row_key}))
        if self.fail_with is not None:
            raise self.fail_with
        if (partition_key, row_key) not in self.rows:
            raise ResourceNotFoundError(message="The specified resource does not exist.")
        return _SdkEntity(self.rows[(partition_key, row_key)], etag='W/"7"')

    async def upsert_entity(self, entity: dict, mode=None):
        self.calls.append(("upsert_entity", {"entity": entity, "mode": mode}))
        self.rows[(entity["PartitionKey"], entity["RowKey"])] = dict(entity)

    async def update_entity(self, entity: dict, **kwargs):
        self.calls.append(("update_entity", {"entity": entity, **kwargs}))

    async def delete_entity(self, partition_key: str, row_key: str):
        self.calls.append(("delete_entity", {"partition_key": partition_key, "row_key": row_key}))
        self.rows.pop((partition_key, row_key), None)

    async def create_table(self):
        raise ResourceExistsError(message="TableAlreadyExists")

    async def close(self) -> None:
        return None


@pytest.mark.asyncio
async def test_get_entity_exposes_etag() -> None:
    client = FakeTableClient()
    client.rows[("p", "r")] = {"PartitionKey": "p", "RowKey": "r", "score": 10}
    entity = await AzureTableStore(client).get_entity("p", "r")
    assert entity[ETAG_KEY] == 'W/"7"'
    assert entity["score"] == 10
    assert "CourseAttempts" in store_latency_by_table(60)


@pytest.mark.asyncio
async def test_errors_are_classified_at_the_boundary() -> None:
    client = FakeTableClient()
    store = AzureTableStore(client)
    with pytest.raises(NotFoundError) as excinfo:
        await store.get_entity("p", "missing")
    assert isinstance(excinfo.value.__cause__, ResourceNotFoundError)

    throttled = HttpResponseError(message="Server Busy")
    throttled.status_code = 503
    client.fail_with = throttled
    with pytest.raises(TransientStoreError):
        await store.get_entity("p", "r")
    assert store_latency_by_table(60)["CourseAttempts"]["failures"] == 2.0


@pytest.mark.asyncio
async def test_writes_strip_etag_and_none_values() -> None:
    client = FakeTableClient()
    store = AzureTableStore(client)
    await store.upsert_entity(
        {"PartitionKey": "p", "RowKey": "r", "score": None, "timeSpent": 0, ETAG_KEY: 'W/"1"'},
        UpdateMode.MERGE,
    )
    name, kwargs = client.calls[-1]
    assert name == "upsert_entity"
    assert kwargs["entity"] == {"PartitionKey": "p", "RowKey": "r", "timeSpent": 0}
    assert kwargs["mode"] == AzureUpdateMode.MERGE


@pytest.mark.asyncio
async def test_conditional_update_passes_etag() -> None:
    client = FakeTableClient()
    await AzureTableStore(client).update_entity({"PartitionKey": "p", "RowKey": "r"}, etag='W/"3"')
    _, kwargs = client.calls[-1]
    assert kwargs["etag"] == 'W/"3"'
    assert kwargs["match_condition"] == MatchConditions.IfNotModified
    assert kwargs["mode"] == AzureUpdateMode.REPLACE


@pytest.mark.asyncio
async def test_delete_missing_entity_reports_not_found() -> None:
    client = FakeTableClient()
    store = AzureTableStore(client)
    with pytest.raises(NotFoundError):
        await store.delete_entity("p", "r")
    assert all(name != "delete_entity" for name, _ in client.calls)

    client.rows[("p", "r")] = {"PartitionKey": "p", "RowKey": "r"}
    await store.delete_entity("p", "r")
    assert client.calls[-1][0] == "delete_entity"


@pytest.mark.asyncio
async def test_existing_table_is_not_an_error() -> None:
    assert await AzureTableStore(FakeTableClient()).create_table_if_not_exists() is False
