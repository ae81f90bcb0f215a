"""DynamoDB document store.

Single-table layout with one partition key::

    id (S)  = {workspace_id}{path}          e.g. "ws1/sessions/42/name"

Other attributes: ``workspaceId``, ``path``, ``kind``, ``data`` (JSON text, so
arbitrary JSON values survive without DynamoDB's Decimal/empty-value rules),
``version`` (N), ``createdAt``/``updatedAt`` (ISO-8601), ``createdBy``/
``updatedBy``.

boto3 calls run in the thread pool via ``anyio.to_thread.run_sync``.  Prefix
queries use a paginated ``Scan`` with ``begins_with(id, :prefix)`` because
``begins_with`` is not available on a partition key in ``Query``.
"""

from __future__ import annotations

import json
from datetime import datetime
from functools import partial
from typing import Any

import boto3
from anyio import to_thread
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError
from botocore.exceptions import ConnectionError as BotoConnectionError
from loguru import logger

from treechat.data_runtime.errors import (
    ConflictError,
    DataAccessError,
    DataValidationError,
    TransactionFailedError,
    TransientStoreError,
)
from treechat.data_runtime.models.document import Document
from treechat.data_runtime.models.enums import DocumentKind
from treechat.data_runtime.store.base import DeleteMutation, Mutation, PutMutation, check_transaction

_TRANSIENT_CODES = frozenset({
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionInProgressException",
})

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _create_dynamodb_client(
    region: str | None = None,
    endpoint_url: str | None = None,
    access_key: str | None = None,
    secret_key: str | None = None,
    max_attempts: int = 1,
) -> Any:
    """Create a low-level boto3 DynamoDB client.

    botocore's own retries are kept to a single attempt; the data client owns
    retry and backoff so that every attempt gets its own timeout.
    """
    config = Config(
        retries={"max_attempts": max_attempts, "mode": "standard"},
        connect_timeout=5,
        read_timeout=30,
    )
    return boto3.client(
        "dynamodb",
        region_name=region,
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        config=config,
    )


# -- Item codec ----------------------------------------------------------------


def _to_item(document: Document) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id": document.id,
        "workspaceId": document.workspace_id,
        "path": document.path,
        "kind": str(document.kind),
        "data": json.dumps(document.data, separators=(",", ":")),
        "version": document.version,
        "createdAt": document.created_at.isoformat(),
        "updatedAt": document.updated_at.isoformat(),
    }
    if document.created_by is not None:
        item["createdBy"] = document.created_by
    if document.updated_by is not None:
        item["updatedBy"] = document.updated_by
    return {name: _serializer.serialize(value) for name, value in item.items()}


def _from_item(raw: dict[str, Any]) -> Document:
    item = {name: _deserializer.deserialize(value) for name, value in raw.items()}
    return Document(
        id=item["id"],
        workspace_id=item["workspaceId"],
        path=item["path"],
        kind=DocumentKind(item.get("kind", DocumentKind.VALUE)),
        data=json.loads(item["data"]) if "data" in item else None,
        version=int(item.get("version", 1)),
        created_at=datetime.fromisoformat(item["createdAt"]),
        created_by=item.get("createdBy"),
        updated_at=datetime.fromisoformat(item["updatedAt"]),
        updated_by=item.get("updatedBy"),
    )


def _version_condition(expected_version: int | None) -> dict[str, Any]:
    if expected_version is None:
        return {}
    if expected_version == 0:
        return {"ConditionExpression": "attribute_not_exists(id)"}
    return {
        "ConditionExpression": "version = :expected",
        "ExpressionAttributeValues": {":expected": {"N": str(expected_version)}},
    }


def _translate(exc: Exception, operation: str) -> DataAccessError:
    """Map a boto/botocore failure onto the data-layer taxonomy."""
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, BotoConnectionError)):
        return TransientStoreError(f"{operation}: connection failure", cause=str(exc))
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in _TRANSIENT_CODES:
            return TransientStoreError(f"{operation}: {code}", code=code)
        if code == "ConditionalCheckFailedException":
            return ConflictError(f"{operation}: version mismatch", code=code)
        if code == "TransactionCanceledException":
            reasons = [r.get("Code") for r in exc.response.get("CancellationReasons", [])]
            if reasons and all(r in _TRANSIENT_CODES for r in reasons if r and r != "None"):
                return TransientStoreError(f"{operation}: transaction throttled", reasons=reasons)
            return TransactionFailedError(f"{operation}: transaction cancelled", reasons=reasons)
        if code == "ValidationException":
            return DataValidationError(f"{operation}: {message}", code=code)
        return DataAccessError(f"{operation}: {code or message}", code=code)
    return DataAccessError(f"{operation}: {exc}")


class DynamoDBDocumentStore:
    """DynamoDB implementation of the DocumentStore protocol."""

    def __init__(
        self,
        table_name: str,
        region: str | None = None,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        client: Any = None,
    ) -> None:
        self._table = table_name
        self._client = client or _create_dynamodb_client(
            region=region,
            endpoint_url=endpoint_url,
            access_key=access_key,
            secret_key=secret_key,
        )

    async def _call(self, operation: str, fn: Any, /, **kwargs: Any) -> Any:
        try:
            # Abandoned on cancel so the caller's per-attempt timeout applies; the
            # worker thread finishes in the background and its result is dropped.
            return await to_thread.run_sync(partial(fn, **kwargs), abandon_on_cancel=True)
        except (ClientError, BotoCoreError) as exc:
            error = _translate(exc, operation)
            logger.debug("DynamoDB {} failed: {} ({})", operation, error.kind, error.message)
            raise error from exc

    # -- Read ------------------------------------------------------------------

    async def get(self, key: str) -> Document | None:
        resp = await self._call(
            "GetItem",
            self._client.get_item,
            TableName=self._table,
            Key={"id": {"S": key}},
            ConsistentRead=True,
        )
        item = resp.get("Item")
        return _from_item(item) if item else None

    async def query_by_prefix(self, prefix: str, *, limit: int | None = None) -> list[Document]:
        documents: list[Document] = []
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {
                "TableName": self._table,
                "FilterExpression": "begins_with(id, :prefix)",
                "ExpressionAttributeValues": {":prefix": {"S": prefix}},
                "ConsistentRead": True,
            }
            if start_key is not None:
                kwargs["ExclusiveStartKey"] = start_key
            resp = await self._call("Scan", self._client.scan, **kwargs)
            documents.extend(_from_item(item) for item in resp.get("Items", []))
            start_key = resp.get("LastEvaluatedKey")
            if start_key is None or (limit is not None and len(documents) >= limit):
                break
        documents.sort(key=lambda d: d.id)
        return documents[:limit] if limit is not None else documents

    # -- Write -----------------------------------------------------------------

    async def put(self, document: Document, *, expected_version: int | None = None) -> None:
        await self._call(
            "PutItem",
            self._client.put_item,
            TableName=self._table,
            Item=_to_item(document),
            **_version_condition(expected_version),
        )

    async def delete(self, key: str) -> None:
        # DeleteItem is idempotent -- no error if the key doesn't exist.
        await self._call("DeleteItem", self._client.delete_item, TableName=self._table, Key={"id": {"S": key}})

    async def transact_write(self, mutations: list[Mutation]) -> None:
        check_transaction(mutations)
        items: list[dict[str, Any]] = []
        for mutation in mutations:
            if isinstance(mutation, PutMutation):
                put = {"TableName": self._table, "Item": _to_item(mutation.document)}
                put.update(_version_condition(mutation.expected_version))
                items.append({"Put": put})
            elif isinstance(mutation, DeleteMutation):
                items.append({"Delete": {"TableName": self._table, "Key": {"id": {"S": mutation.key}}}})
        await self._call("TransactWriteItems", self._client.transact_write_items, TransactItems=items)

    # -- Admin -----------------------------------------------------------------

    async def ensure_table(self) -> bool:
        """Create the table (on-demand billing) if missing.  Returns True if created."""
        try:
            await self._call("DescribeTable", self._client.describe_table, TableName=self._table)
        except DataAccessError as exc:
            if exc.details.get("code") != "ResourceNotFoundException":
                raise
        else:
            return False

        await self._call(
            "CreateTable",
            self._client.create_table,
            TableName=self._table,
            AttributeDefinitions=[{"AttributeName": "id", "AttributeType": "S"}],
            KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
            BillingMode="PAY_PER_REQUEST",
        )
        waiter = self._client.get_waiter("table_exists")
        await to_thread.run_sync(partial(waiter.wait, TableName=self._table))
        logger.info("DynamoDB: created table {}", self._table)
        return True
