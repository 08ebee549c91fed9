from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp
from graphql import GraphQLError, OperationDefinitionNode, OperationType, parse
from graphql.language import DocumentNode

logger = logging.getLogger("graphql-mcp.proxy")


class OutcomeKind(str, Enum):
    OK = "ok"
    INVALID_VARIABLES = "invalid_variables"
    INVALID_QUERY = "invalid_query"
    MUTATION_NOT_ALLOWED = "mutation_not_allowed"
    UPSTREAM_HTTP_ERROR = "upstream_http_error"
    UPSTREAM_INVALID_JSON = "upstream_invalid_json"
    UPSTREAM_GRAPHQL_ERRORS = "upstream_graphql_errors"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class QueryOutcome:
    kind: OutcomeKind
    text: str
    is_error: bool


def is_mutation(document: DocumentNode) -> bool:
    return any(
        isinstance(definition, OperationDefinitionNode)
        and definition.operation == OperationType.MUTATION
        for definition in document.definitions
    )


def parse_variables(variables: str | None) -> dict[str, Any] | None:
    if not variables:
        return None
    parsed = json.loads(variables)
    if parsed is not None and not isinstance(parsed, dict):
        raise ValueError("variables must be a JSON object")
    return parsed


class GraphQLProxy:
    """Forwards a single query or mutation to the configured GraphQL endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        headers: dict[str, str] | None = None,
        allow_mutations: bool = False,
        timeout_s: float = 30.0,
    ):
        self.endpoint = endpoint
        self.headers = dict(headers or {})
        self.allow_mutations = allow_mutations
        self.timeout_s = timeout_s

    def check(self, query: str, variables: str | None = None) -> QueryOutcome | dict[str, Any] | None:
        """
        Validate a request without sending it.

        Returns a rejection outcome, or the parsed variables when the request may be sent.
        """
        try:
            parsed_variables = parse_variables(variables)
        except ValueError as exc:
            logger.error("Error parsing variables JSON: %s", exc)
            return QueryOutcome(
                OutcomeKind.INVALID_VARIABLES,
                f"Invalid variables: Must be a valid JSON object string. Error: {exc}",
                True,
            )

        try:
            document = parse(query)
        except GraphQLError as exc:
            logger.error("Invalid GraphQL query: %s", exc.message)
            return QueryOutcome(
                OutcomeKind.INVALID_QUERY, f"Invalid GraphQL query: {exc.message}", True
            )

        if is_mutation(document) and not self.allow_mutations:
            logger.warning("Mutation detected but not allowed by configuration.")
            return QueryOutcome(
                OutcomeKind.MUTATION_NOT_ALLOWED,
                "Mutations are not allowed. Set ALLOW_MUTATIONS=true to enable them.",
                True,
            )
        return parsed_variables

    async def execute(self, query: str, variables: str | None = None) -> QueryOutcome:
        checked = self.check(query, variables)
        if isinstance(checked, QueryOutcome):
            return checked

        payload: dict[str, Any] = {"query": query}
        if checked is not None:
            payload["variables"] = checked
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(self.headers)

        logger.info("Executing GraphQL query against %s", self.endpoint)
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.endpoint, json=payload, headers=headers) as resp:
                    status, reason = resp.status, resp.reason or ""
                    raw = await resp.read()
                    body = raw.decode(resp.get_encoding(), errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Failed to execute GraphQL query: %r", exc)
            return QueryOutcome(
                OutcomeKind.UNREACHABLE,
                f"Failed to execute GraphQL query: {exc or type(exc).__name__}",
                True,
            )

        if status >= 400:
            logger.error("GraphQL request failed: %s %s", status, reason)
            return QueryOutcome(
                OutcomeKind.UPSTREAM_HTTP_ERROR,
                f"GraphQL request failed: {status} {reason}\n{body}",
                True,
            )

        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse GraphQL JSON response: %s", exc)
            return QueryOutcome(
                OutcomeKind.UPSTREAM_INVALID_JSON,
                f"Failed to parse GraphQL JSON response: {exc}\nResponse Body:\n{body}",
                True,
            )

        if isinstance(data, dict) and data.get("errors"):
            logger.warning("GraphQL response contained errors: %s", data["errors"])
            return QueryOutcome(
                OutcomeKind.UPSTREAM_GRAPHQL_ERRORS,
                "GraphQL query executed, but the response contains errors: "
                f"{json.dumps(data, indent=2)}",
                False,
            )

        logger.info("GraphQL query successful.")
        return QueryOutcome(OutcomeKind.OK, json.dumps(data, indent=2), False)
