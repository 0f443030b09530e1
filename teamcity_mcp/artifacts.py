"""
Build artifacts: listing with filters and downloading
"""

import base64
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from teamcity_mcp.cache import TTLCache, make_key
from teamcity_mcp.client import TeamCityClient, artifact_content_path
from teamcity_mcp.errors import (
    ArtifactNotFoundError,
    BuildNotFoundError,
    TeamCityAuthenticationError,
    TeamCityError,
    TeamCityNotFoundError,
    ValidationError,
)
from teamcity_mcp.locators import glob_to_regex
from teamcity_mcp.log import debug_log, warn_log
from teamcity_mcp.normalize import as_list

ENCODINGS = ("base64", "text")
MAX_PARALLEL_DOWNLOADS = 4


class ArtifactManager:
    CACHE_TTL = 60
    DEFAULT_LIMIT = 100
    MAX_LIMIT = 1000

    def __init__(self, client: TeamCityClient, cache: Optional[TTLCache] = None):
        self.client = client
        self.cache = cache if cache is not None else TTLCache(self.CACHE_TTL)

    def list_artifacts(
        self,
        build_id: str,
        name_filter: Optional[str] = None,
        path_filter: Optional[str] = None,
        extension: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
        include_nested: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        force_refresh: bool = False,
    ) -> List[Dict[str, Any]]:
        """List the files a build published.

        Args:
            build_id: Internal build id
            name_filter: Glob matched against the file name
            path_filter: Glob matched against the full artifact path
            extension: File extension, with or without the leading dot
            min_size: Smallest size in bytes to include
            max_size: Largest size in bytes to include
            include_nested: Descend into artifact directories
            limit: Page size (default 100, capped at 1000) when paginating
            offset: Number of matching artifacts to skip
            force_refresh: Bypass the cache

        Returns:
            List of artifact dictionaries (name, path, size, modification_time, download_url)
        """
        cache_key = make_key(
            "artifacts",
            str(build_id),
            name_filter=name_filter,
            path_filter=path_filter,
            extension=extension,
            min_size=min_size,
            max_size=max_size,
            include_nested=include_nested,
            limit=limit,
            offset=offset,
        )
        if not force_refresh:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        try:
            payload = self.client.list_artifacts(build_id, recursive=include_nested)
        except TeamCityAuthenticationError:
            raise TeamCityAuthenticationError("Authentication failed: Invalid TeamCity token")
        except TeamCityNotFoundError:
            raise BuildNotFoundError(str(build_id), message=f"Build not found: {build_id}")

        artifacts = self._parse_files(payload, build_id, include_nested)
        artifacts = self._apply_filters(artifacts, name_filter, path_filter, extension, min_size, max_size)
        if limit or offset:
            start = offset or 0
            artifacts = artifacts[start:start + min(limit or self.DEFAULT_LIMIT, self.MAX_LIMIT)]

        self.cache.set(cache_key, artifacts)
        return artifacts

    def _parse_files(self, payload: Dict[str, Any], build_id: str, include_nested: bool) -> List[Dict[str, Any]]:
        artifacts = []
        for entry in as_list((payload or {}).get("file")):
            children = entry.get("children")
            if children is not None:
                if include_nested and isinstance(children, dict) and "file" in children:
                    artifacts.extend(self._parse_files(children, build_id, include_nested))
                continue
            path = entry.get("fullName") or entry.get("name") or ""
            if not include_nested and "/" in path:
                continue
            artifacts.append({
                "name": entry.get("name") or path.rsplit("/", 1)[-1],
                "path": path,
                "size": entry.get("size", 0),
                "modification_time": entry.get("modificationTime", ""),
                "download_url": self.client.rest_url + artifact_content_path(build_id, path),
                "is_directory": False,
            })
        return artifacts

    @staticmethod
    def _apply_filters(artifacts, name_filter, path_filter, extension, min_size, max_size):
        if name_filter:
            pattern = glob_to_regex(name_filter)
            artifacts = [a for a in artifacts if pattern.match(a["name"])]
        if path_filter:
            pattern = glob_to_regex(path_filter)
            artifacts = [a for a in artifacts if pattern.match(a["path"])]
        if extension:
            suffix = extension if extension.startswith(".") else f".{extension}"
            artifacts = [a for a in artifacts if a["name"].endswith(suffix)]
        if min_size is not None:
            artifacts = [a for a in artifacts if a["size"] >= min_size]
        if max_size is not None:
            artifacts = [a for a in artifacts if a["size"] <= max_size]
        return artifacts

    def download_artifact(
        self,
        build_id: str,
        artifact_path: str,
        encoding: str = "base64",
        max_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Download one artifact, located by path or by file name.

        Raises:
            ArtifactNotFoundError: If no artifact matches artifact_path
            ValidationError: If the artifact is larger than max_size or the encoding is unknown
        """
        if encoding not in ENCODINGS:
            raise ValidationError(f"Unsupported encoding '{encoding}'. Use one of: {', '.join(ENCODINGS)}", field="encoding")

        artifacts = self.list_artifacts(build_id, include_nested=True)
        artifact = next((a for a in artifacts if a["path"] == artifact_path or a["name"] == artifact_path), None)
        if artifact is None:
            raise ArtifactNotFoundError(artifact_path, message=f"Artifact not found: {artifact_path}")
        if max_size and artifact["size"] > max_size:
            raise ValidationError(
                f"Artifact size exceeds maximum allowed size: {artifact['size']} > {max_size}",
                field="max_size",
            )

        debug_log(f"Downloading artifact {artifact['path']} from build {build_id}")
        response = self.client.get_artifact_content(build_id, artifact["path"])
        if encoding == "text":
            content = response.text
        else:
            content = base64.b64encode(response.content).decode("ascii")
        return {
            "name": artifact["name"],
            "path": artifact["path"],
            "size": artifact["size"],
            "content": content,
            "encoding": encoding,
            "mime_type": response.headers.get("Content-Type"),
        }

    def download_artifacts(
        self,
        build_id: str,
        artifact_paths: List[str],
        encoding: str = "base64",
        max_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Download several artifacts concurrently.

        Every path yields an entry; failed downloads carry an "error" message
        instead of content.
        """
        if not artifact_paths:
            return []
        with ThreadPoolExecutor(max_workers=min(MAX_PARALLEL_DOWNLOADS, len(artifact_paths))) as executor:
            futures = [
                executor.submit(self.download_artifact, build_id, path, encoding, max_size)
                for path in artifact_paths
            ]

        results = []
        for path, future in zip(artifact_paths, futures):
            try:
                results.append(future.result())
            except TeamCityError as e:
                warn_log(f"Failed to download artifact {path}: {e.message}")
                results.append({"name": path, "path": path, "size": 0, "error": e.message})
        return results
