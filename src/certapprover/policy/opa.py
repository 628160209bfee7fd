"""
Open Policy Agent evaluator.

This module implements the PolicyEvaluator interface on top of the OPA
REST API. OPA usually runs as a sidecar next to the controller.

Requirements:
    - OPA must be running in server mode (`opa run --server`)

Compile:
    Each module is uploaded with ``PUT /v1/policies/certapprover/<digest>/<n>-<file>``.
    OPA compiles on upload and answers 400 with a list of errors if a module
    is invalid; modules already uploaded for the same program are removed
    again. Evaluation reads the shared ``approval`` package, so modules of any
    other certapprover program found via ``GET /v1/policies`` are either
    deleted (controller start) or make the compile fail (dry runs).

Evaluate:
    ``POST /v1/data/approval/allow`` with ``{"input": <document>}``. A
    response without a ``result`` key means the rule is undefined for this
    input, which the adapter treats as not allowed.

Usage:
    with OpaClient(OpaConfig()) as opa:
        policy = opa.compile({"approval.rego": source})
        allowed = opa.evaluate(policy, document)
"""

import json
import logging
from collections.abc import Mapping
from pathlib import PurePath
from typing import Any

import httpx

from certapprover.config import OpaConfig
from certapprover.errors import EvaluationFailedError, PolicyCompileError, PolicyInUseError
from certapprover.policy.program import CompiledPolicy, digest_sources

logger = logging.getLogger(__name__)

POLICY_ID_PREFIX = "certapprover"


class OpaClient:
    """
    PolicyEvaluator backed by an OPA server.

    Attributes:
        config: Connection settings
    """

    def __init__(
        self,
        config: OpaConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config or OpaConfig()
        self._transport = transport
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "OpaClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Compile
    # =========================================================================

    def compile(self, sources: Mapping[str, str], replace_existing: bool = True) -> CompiledPolicy:
        """
        Upload and compile policy modules.

        All programs share the ``approval`` package, so OPA must never hold
        more than one certapprover program at a time.

        Args:
            sources: Module sources keyed by filename
            replace_existing: When True, modules of other certapprover
                programs (left behind by an earlier run) are deleted once the
                new program compiled. When False, any such module makes the
                compile fail before anything is uploaded.

        Returns:
            The compiled program

        Raises:
            PolicyCompileError: OPA rejected a module or was unreachable
            PolicyInUseError: replace_existing is False and OPA already
                holds a certapprover program
        """
        if not sources:
            raise PolicyCompileError(errors=["no policy modules given"])

        digest = digest_sources(sources)
        program_id = f"{POLICY_ID_PREFIX}/{digest[:12]}"
        loaded = self.loaded_modules()
        if loaded and not replace_existing:
            raise PolicyInUseError(server=self.config.base_url, modules=loaded)

        uploaded: list[str] = []
        for module_id, filename in _module_ids(program_id, sources):
            try:
                response = self._get_client().put(
                    f"/v1/policies/{module_id}",
                    content=sources[filename].encode("utf-8"),
                    headers={"Content-Type": "text/plain"},
                )
            except httpx.HTTPError as e:
                self._delete_modules(uploaded)
                raise PolicyCompileError(
                    errors=[f"cannot reach OPA at {self.config.base_url}: {e}"]
                ) from e

            if response.status_code != 200:
                self._delete_modules(uploaded)
                raise PolicyCompileError(errors=_compile_errors(filename, response))

            uploaded.append(module_id)
            logger.debug("uploaded policy module %s as %s", filename, module_id)

        stale = [m for m in loaded if m not in uploaded]
        if stale:
            logger.info("removing %d policy module(s) of a previous program", len(stale))
            self._delete_modules(stale)

        return CompiledPolicy(sources=dict(sources), digest=digest, program_id=program_id)

    def loaded_modules(self) -> list[str]:
        """
        List the certapprover module ids currently loaded in OPA.

        Raises:
            PolicyCompileError: OPA could not be queried
        """
        try:
            response = self._get_client().get("/v1/policies")
        except httpx.HTTPError as e:
            raise PolicyCompileError(
                errors=[f"cannot reach OPA at {self.config.base_url}: {e}"]
            ) from e

        if response.status_code != 200:
            raise PolicyCompileError(
                errors=[f"listing policies: HTTP {response.status_code}: {response.text[:500]}"]
            )
        try:
            policies = response.json().get("result") or []
        except json.JSONDecodeError as e:
            raise PolicyCompileError(errors=[f"Invalid JSON from OPA: {e}"]) from e

        prefix = f"{POLICY_ID_PREFIX}/"
        return sorted(p["id"] for p in policies if p.get("id", "").startswith(prefix))

    def remove(self, policy: CompiledPolicy) -> None:
        """Delete the modules of a program from OPA."""
        module_ids = [module_id for module_id, _ in _module_ids(policy.program_id, policy.sources)]
        self._delete_modules(module_ids)

    def _delete_modules(self, module_ids: list[str]) -> None:
        for module_id in module_ids:
            try:
                self._get_client().delete(f"/v1/policies/{module_id}")
            except httpx.HTTPError as e:
                logger.warning("unable to delete policy module %s: %s", module_id, e)

    # =========================================================================
    # Evaluate
    # =========================================================================

    def evaluate(self, policy: CompiledPolicy, document: dict[str, Any]) -> Any:
        """
        Evaluate the policy's decision rule against an input document.

        Returns:
            The rule's value, or None when the rule is undefined

        Raises:
            EvaluationFailedError: OPA failed or was unreachable
        """
        path = "/v1/data/" + "/".join(policy.package.split(".")) + f"/{policy.query}"

        try:
            response = self._get_client().post(path, json={"input": document})
        except httpx.TimeoutException as e:
            raise EvaluationFailedError(
                underlying_error=f"OPA timed out after {self.config.timeout_seconds}s"
            ) from e
        except httpx.HTTPError as e:
            raise EvaluationFailedError(underlying_error=f"cannot reach OPA: {e}") from e

        if response.status_code != 200:
            raise EvaluationFailedError(
                underlying_error=f"HTTP {response.status_code}: {response.text[:500]}"
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise EvaluationFailedError(underlying_error=f"Invalid JSON from OPA: {e}") from e

        return data.get("result")

    def check_connection(self) -> tuple[bool, str]:
        """
        Check if OPA is reachable and healthy.

        Returns:
            Tuple of (is_ok, message)
        """
        try:
            response = self._get_client().get("/health")
        except httpx.HTTPError as e:
            return False, f"Cannot connect to OPA at {self.config.base_url}: {e}"
        if response.status_code != 200:
            return False, f"OPA returned HTTP {response.status_code}"
        return True, f"Connected to OPA at {self.config.base_url}"


def _module_ids(program_id: str, sources: Mapping[str, str]) -> list[tuple[str, str]]:
    """Return (module id, filename) pairs of a program, in upload order."""
    return [
        (f"{program_id}/{index}-{PurePath(filename).name}", filename)
        for index, filename in enumerate(sorted(sources))
    ]


def _compile_errors(filename: str, response: httpx.Response) -> list[str]:
    """Extract readable compile errors from an OPA error response."""
    try:
        body = response.json()
    except json.JSONDecodeError:
        return [f"{filename}: HTTP {response.status_code}: {response.text[:500]}"]

    errors = []
    for err in body.get("errors") or []:
        location = err.get("location") or {}
        row = location.get("row")
        where = f"{filename}:{row}" if row else filename
        errors.append(f"{where}: {err.get('message', 'unknown error')}")

    if not errors:
        errors.append(f"{filename}: {body.get('message', f'HTTP {response.status_code}')}")
    return errors
