"""
TeamCity MCP Server

This module provides a Model Context Protocol (MCP) server that exposes TeamCity
projects, build configurations, builds, the build queue, triggers, dependencies,
artifacts, VCS roots, changes, build parameters and test results as tools.

Read-only tools (plus triggering and cancelling queued builds) are always
registered. Tools that change server configuration are registered only when
MCP_MODE=full.
"""

import argparse
import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, AsyncIterator, Callable, Dict, List, Optional, Union

import dotenv
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from teamcity_mcp import __version__
from teamcity_mcp.artifacts import ArtifactManager
from teamcity_mcp.build_configs import BuildConfigNavigator
from teamcity_mcp.builds import BuildListManager, BuildManager
from teamcity_mcp.changes import ChangeManager
from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.config import TeamCityConfig, get_mcp_mode, load_config
from teamcity_mcp.dependencies import BuildDependencyManager
from teamcity_mcp.errors import TeamCityError, ValidationError, format_error
from teamcity_mcp.log import debug_log, error_log, info_log, mask_secrets, set_level
from teamcity_mcp.parameters import BuildParameterManager
from teamcity_mcp.projects import ProjectNavigator
from teamcity_mcp.reports import TestResultsManager
from teamcity_mcp.results import BuildResultsManager
from teamcity_mcp.triggers import BuildTriggerManager
from teamcity_mcp.vcs_roots import VcsRootManager

TRANSPORTS = ("stdio", "sse", "streamable-http")

PageSize = Annotated[int, Field(ge=1, le=1000)]


@dataclass
class TeamCityContext:
    """Context holding the REST client and one instance of every resource manager."""
    client: TeamCityClient
    config: TeamCityConfig
    projects: ProjectNavigator
    build_configs: BuildConfigNavigator
    build_list: BuildListManager
    builds: BuildManager
    results: BuildResultsManager
    artifacts: ArtifactManager
    dependencies: BuildDependencyManager
    triggers: BuildTriggerManager
    vcs_roots: VcsRootManager
    test_results: TestResultsManager
    changes: ChangeManager
    parameters: BuildParameterManager


def create_context(config: TeamCityConfig, client: Optional[TeamCityClient] = None) -> TeamCityContext:
    client = client or TeamCityClient(
        config.url, config.token, timeout=config.timeout, max_retries=config.max_retries
    )
    artifacts = ArtifactManager(client)
    return TeamCityContext(
        client=client,
        config=config,
        projects=ProjectNavigator(client),
        build_configs=BuildConfigNavigator(client),
        build_list=BuildListManager(client),
        builds=BuildManager(client),
        results=BuildResultsManager(client, artifacts=artifacts),
        artifacts=artifacts,
        dependencies=BuildDependencyManager(client),
        triggers=BuildTriggerManager(client),
        vcs_roots=VcsRootManager(client),
        test_results=TestResultsManager(client),
        changes=ChangeManager(client),
        parameters=BuildParameterManager(client),
    )


@asynccontextmanager
async def teamcity_lifespan(server: FastMCP) -> AsyncIterator[TeamCityContext]:
    """Manage the TeamCity client lifecycle.

    Loads configuration from the environment, checks that the server answers
    with the given token, and closes the HTTP session on shutdown.

    Args:
        server: The FastMCP server instance.

    Yields:
        TeamCityContext: Context object with the client and resource managers.

    Raises:
        ValueError: If required environment variables are missing or the connection fails.
    """
    debug_log("Starting TeamCity lifespan")
    context = None
    try:
        config = load_config()
        set_level(config.log_level)

        debug_log(f"TEAMCITY_URL: {config.url}")
        debug_log(f"TEAMCITY_TOKEN: {'Set' if config.token else 'Not set'}")
        debug_log(f"MCP_MODE: {config.mode}")

        context = create_context(config)
        if not context.client.test_connection():
            raise ValueError(f"Failed to connect to TeamCity at {config.url}")
        info_log(f"Connected to TeamCity at {config.url} ({config.mode} mode)")

        yield context
    except Exception as e:
        error_log(f"Error in TeamCity lifespan: {str(e)}")
        raise
    finally:
        if context is not None:
            context.client.close()
        debug_log("Exiting TeamCity lifespan")


dotenv.load_dotenv()
MCP_MODE = get_mcp_mode()

# Initialize the MCP server
mcp = FastMCP("teamcity-mcp", lifespan=teamcity_lifespan)
debug_log(f"TeamCity MCP server initialized ({MCP_MODE} mode)")


def full_mode_tool(server: Optional[FastMCP] = None):
    """Register a tool only when the server runs in full mode.

    The undecorated function is returned either way so it stays callable.
    """
    def decorator(fn: Callable) -> Callable:
        if MCP_MODE == "full":
            (server or mcp).tool()(fn)
        else:
            debug_log(f"Skipping full-mode tool {fn.__name__}")
        return fn
    return decorator


def _context(ctx: Context) -> TeamCityContext:
    return ctx.request_context.lifespan_context


def run_tool(tool_name: str, body: Callable[[], Any], /, **args) -> Any:
    """Run a tool body, turning every failure into the error envelope.

    The keyword arguments are only logged, so tools may pass any of their own
    parameters (including ones named like tool_name or body).
    """
    debug_log(f"{tool_name} called with {mask_secrets(args)}")
    try:
        return body()
    except TeamCityError as e:
        error_log(f"{tool_name} failed: {e.message}")
        return format_error(e)
    except ValueError as e:
        error_log(f"{tool_name} rejected arguments: {str(e)}")
        return format_error(ValidationError(str(e)))
    except Exception as e:
        error_log(f"{tool_name} crashed: {type(e).__name__}: {str(e)}")
        return format_error(e)


class VcsRootFilter(BaseModel):
    url: Optional[str] = Field(None, description="Substring of the repository URL")
    branch: Optional[str] = Field(None, description="Exact default branch")
    vcs_name: Optional[str] = Field(None, description="VCS type, e.g. jetbrains.git")


class StatusFilter(BaseModel):
    last_build_status: Optional[str] = Field(None, description="SUCCESS, FAILURE, ERROR or UNKNOWN")
    paused: Optional[bool] = None
    has_recent_activity: Optional[bool] = Field(None, description="Whether the configuration has any finished build")
    active_since: Optional[str] = Field(None, description="Only configurations with a build finished after this date")


# Server and connection tools

@mcp.tool()
def ping(ctx: Context, message: Optional[str] = None) -> Dict[str, Any]:
    """Check that the MCP server is responsive.

    Args:
        message: Optional text echoed back

    Returns:
        Dictionary with "pong", the echoed message and a timestamp
    """
    debug_log("Ping")
    return {
        "status": "pong",
        "message": message,
        "version": __version__,
        "mode": MCP_MODE,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@mcp.tool()
def check_teamcity_connection(ctx: Context) -> Dict[str, Any]:
    """Check connection to the TeamCity server.

    Returns:
        Dictionary containing connection status, server URL and tool mode
    """
    debug_log("Checking TeamCity connection")
    context = _context(ctx)
    connected = context.client.test_connection()
    return {
        "status": "connected" if connected else "error",
        "url": context.config.url,
        "mode": context.config.mode,
    }


@mcp.tool()
def get_server_info(ctx: Context) -> Dict[str, Any]:
    """Get TeamCity server version and build information.

    Returns:
        Dictionary with version, build number and start time
    """
    client = _context(ctx).client
    return run_tool("get_server_info", client.get_server_info)


# Projects

@mcp.tool()
def list_projects(
    ctx: Context,
    locator: Optional[str] = None,
    parent_project_id: Optional[str] = None,
    page_size: PageSize = 100,
    fetch_all: bool = False,
    max_pages: Optional[int] = None,
) -> Dict[str, Any]:
    """List projects.

    Args:
        locator: Raw TeamCity project locator, e.g. "archived:false"
        parent_project_id: Only direct children of this project
        page_size: Projects per request (1-1000)
        fetch_all: Follow pages until exhausted
        max_pages: Upper bound on pages when fetch_all is set

    Returns:
        Dictionary with "items" and "pagination"
    """
    projects = _context(ctx).projects
    return run_tool(
        "list_projects",
        lambda: projects.list_projects(locator, parent_project_id, page_size, fetch_all, max_pages),
        locator=locator,
        parent_project_id=parent_project_id,
        page_size=page_size,
        fetch_all=fetch_all,
    )


@mcp.tool()
def navigate_projects(
    ctx: Context,
    mode: str = "list",
    project_id: Optional[str] = None,
    root_project_id: Optional[str] = None,
    name_pattern: Optional[str] = None,
    archived: Optional[bool] = None,
    parent_project_id: Optional[str] = None,
    page: int = 1,
    page_size: PageSize = 100,
    sort_by: Optional[str] = None,
    sort_order: str = "asc",
    include_statistics: bool = False,
    max_depth: int = 5,
) -> Dict[str, Any]:
    """Explore projects as a filtered list, a tree, an ancestor chain or a descendant list.

    Args:
        mode: "list", "hierarchy", "ancestors" or "descendants"
        project_id: Target project for ancestors and descendants
        root_project_id: Tree root for hierarchy mode, defaults to _Root
        name_pattern: Name filter for list mode
        archived: Archived filter for list mode
        parent_project_id: Direct parent filter for list mode
        page: 1-based page for list mode
        page_size: Projects per page (1-1000)
        sort_by: "name", "id" or "level"
        sort_order: "asc" or "desc"
        include_statistics: Attach build configuration and subproject counts
        max_depth: Depth limit for hierarchy and descendants

    Returns:
        Mode-specific result
    """
    projects = _context(ctx).projects
    return run_tool(
        "navigate_projects",
        lambda: projects.navigate(
            mode=mode,
            project_id=project_id,
            root_project_id=root_project_id,
            name_pattern=name_pattern,
            archived=archived,
            parent_project_id=parent_project_id,
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_order=sort_order,
            include_statistics=include_statistics,
            max_depth=max_depth,
        ),
        mode=mode,
        project_id=project_id,
        name_pattern=name_pattern,
        page=page,
    )


@mcp.tool()
def get_project(ctx: Context, project_id: str) -> Dict[str, Any]:
    """Get details of a single project.

    Args:
        project_id: Project ID

    Returns:
        Project record as returned by TeamCity
    """
    projects = _context(ctx).projects
    return run_tool("get_project", lambda: projects.get_project(project_id), project_id=project_id)


@mcp.tool()
def list_project_hierarchy(ctx: Context, root_project_id: Optional[str] = None, max_depth: int = 5) -> Dict[str, Any]:
    """Get the project tree below a root project.

    Args:
        root_project_id: Tree root, defaults to _Root
        max_depth: How many levels to descend

    Returns:
        Dictionary with the nested "hierarchy" and "max_depth_reached"
    """
    projects = _context(ctx).projects
    return run_tool(
        "list_project_hierarchy",
        lambda: projects.navigate(mode="hierarchy", root_project_id=root_project_id, max_depth=max_depth),
        root_project_id=root_project_id,
        max_depth=max_depth,
    )


@mcp.tool()
def get_project_ancestors(ctx: Context, project_id: str) -> Dict[str, Any]:
    """Get the chain of parent projects, root first, ending with the project itself.

    Args:
        project_id: Project ID
    """
    projects = _context(ctx).projects
    return run_tool(
        "get_project_ancestors",
        lambda: projects.navigate(mode="ancestors", project_id=project_id),
        project_id=project_id,
    )


@mcp.tool()
def get_project_descendants(ctx: Context, project_id: str, max_depth: int = 5) -> Dict[str, Any]:
    """Get every subproject below a project, with its level and parent.

    Args:
        project_id: Project ID
        max_depth: How many levels to descend
    """
    projects = _context(ctx).projects
    return run_tool(
        "get_project_descendants",
        lambda: projects.navigate(mode="descendants", project_id=project_id, max_depth=max_depth),
        project_id=project_id,
        max_depth=max_depth,
    )


# Builds

@mcp.tool()
def list_builds(
    ctx: Context,
    project: Optional[str] = None,
    build_type: Optional[str] = None,
    status: Optional[str] = None,
    branch: Optional[str] = None,
    tag: Optional[str] = None,
    since_date: Optional[str] = None,
    until_date: Optional[str] = None,
    since_build: Optional[int] = None,
    running: Optional[bool] = None,
    canceled: Optional[bool] = None,
    personal: Optional[bool] = None,
    failed_to_start: Optional[bool] = None,
    limit: Annotated[Optional[int], Field(ge=1, le=1000)] = None,
    offset: Optional[int] = None,
    include_total_count: bool = False,
    force_refresh: bool = False,
) -> Dict[str, Any]:
    """List builds matching the given filters.

    Args:
        project: Project ID
        build_type: Build configuration ID
        status: SUCCESS, FAILURE, ERROR or UNKNOWN
        branch: Branch name, "default:true" or a branch locator
        tag: Build tag
        since_date: ISO-8601 or TeamCity date; builds started after it
        until_date: ISO-8601 or TeamCity date; builds started before it
        since_build: Only builds after this build ID
        running: Running state filter
        canceled: Canceled state filter
        personal: Personal build filter
        failed_to_start: Failed-to-start filter
        limit: Maximum builds to return (default 100)
        offset: Number of builds to skip
        include_total_count: Also count every matching build
        force_refresh: Bypass the 30 second result cache

    Returns:
        Dictionary with "builds" and "metadata"
    """
    build_list = _context(ctx).build_list
    filters = dict(
        project=project,
        build_type=build_type,
        status=status,
        branch=branch,
        tag=tag,
        since_date=since_date,
        until_date=until_date,
        since_build=since_build,
        running=running,
        canceled=canceled,
        personal=personal,
        failed_to_start=failed_to_start,
        limit=limit,
        offset=offset,
    )
    return run_tool(
        "list_builds",
        lambda: build_list.list_builds(
            include_total_count=include_total_count, force_refresh=force_refresh, **filters
        ),
        **filters,
    )


@mcp.tool()
def get_build(ctx: Context, build_id: str) -> Dict[str, Any]:
    """Get full details of a build.

    Args:
        build_id: Internal build ID
    """
    builds = _context(ctx).builds
    return run_tool("get_build", lambda: builds.get_build(build_id), build_id=build_id)


@mcp.tool()
def get_build_status(
    ctx: Context,
    build_id: str,
    include_tests: bool = False,
    include_problems: bool = False,
    force_refresh: bool = False,
) -> Dict[str, Any]:
    """Get the state of a build, including queued builds.

    Args:
        build_id: Internal build ID
        include_tests: Attach the test summary
        include_problems: Attach build problems
        force_refresh: Ignore cached results for finished builds

    Returns:
        Dictionary with state, status, percentage complete and optional test/problem details
    """
    builds = _context(ctx).builds
    return run_tool(
        "get_build_status",
        lambda: builds.get_build_status(build_id, include_tests, include_problems, force_refresh),
        build_id=build_id,
        include_tests=include_tests,
        include_problems=include_problems,
    )


@mcp.tool()
def get_build_results(
    ctx: Context,
    build_id: str,
    include_artifacts: bool = False,
    include_statistics: bool = False,
    include_changes: bool = False,
    include_dependencies: bool = False,
    artifact_filter: Optional[str] = None,
) -> Dict[str, Any]:
    """Get a build summary with its artifacts, statistics, changes and dependency builds.

    Args:
        build_id: Internal build ID
        include_artifacts: Attach the artifact listing
        include_statistics: Attach build statistics (duration, test counts, coverage)
        include_changes: Attach the VCS changes in the build
        include_dependencies: Attach the snapshot dependency builds
        artifact_filter: Glob on artifact paths, e.g. "reports/*"
    """
    results = _context(ctx).results
    return run_tool(
        "get_build_results",
        lambda: results.get_build_results(
            build_id, include_artifacts, include_statistics, include_changes, include_dependencies, artifact_filter
        ),
        build_id=build_id,
        include_artifacts=include_artifacts,
        include_statistics=include_statistics,
        include_changes=include_changes,
        include_dependencies=include_dependencies,
    )


@mcp.tool()
def fetch_build_log(
    ctx: Context,
    build_id: Optional[str] = None,
    build_number: Optional[str] = None,
    build_type_id: Optional[str] = None,
    page: int = 1,
    page_size: Annotated[Optional[int], Field(ge=1, le=5000)] = None,
    start_line: Optional[int] = None,
    line_count: Optional[int] = None,
    tail: bool = False,
) -> Dict[str, Any]:
    """Fetch part of a build log.

    Args:
        build_id: Internal build ID
        build_number: Build number as shown in the UI, used when build_id is not given
        build_type_id: Build configuration narrowing a build_number lookup
        page: 1-based page of lines
        page_size: Lines per page (default 500)
        start_line: 0-based first line, overrides page
        line_count: Lines to return from start_line
        tail: Return the last page_size lines

    Returns:
        Dictionary with "lines" and paging "meta"
    """
    builds = _context(ctx).builds
    return run_tool(
        "fetch_build_log",
        lambda: builds.fetch_build_log(
            build_id=build_id,
            build_number=build_number,
            build_type_id=build_type_id,
            page=page,
            page_size=page_size,
            start_line=start_line,
            line_count=line_count,
            tail=tail,
        ),
        build_id=build_id,
        build_number=build_number,
        page=page,
        tail=tail,
    )


@mcp.tool()
def trigger_build(
    ctx: Context,
    build_type_id: str,
    branch_name: Optional[str] = None,
    comment: Optional[str] = None,
    properties: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Queue a build of a build configuration.

    Args:
        build_type_id: Build configuration ID
        branch_name: Branch to build
        comment: Comment attached to the build
        properties: Build parameters (e.g. {"env.DEPLOY": "true"})

    Returns:
        Dictionary with the queued build ID, state and web URL
    """
    builds = _context(ctx).builds
    return run_tool(
        "trigger_build",
        lambda: builds.trigger_build(build_type_id, branch_name, comment, properties),
        build_type_id=build_type_id,
        branch_name=branch_name,
        properties=properties,
    )


@mcp.tool()
def cancel_queued_build(ctx: Context, build_id: str) -> Dict[str, Any]:
    """Remove a build from the queue.

    Args:
        build_id: Queued build ID
    """
    builds = _context(ctx).builds
    return run_tool("cancel_queued_build", lambda: builds.cancel_queued_build(build_id), build_id=build_id)


@mcp.tool()
def list_queued_builds(
    ctx: Context,
    locator: Optional[str] = None,
    page_size: PageSize = 100,
    fetch_all: bool = False,
    max_pages: Optional[int] = None,
) -> Dict[str, Any]:
    """List builds waiting in the queue.

    Args:
        locator: Raw queue locator, e.g. "buildType:(id:MyConfig)"
        page_size: Builds per request (1-1000)
        fetch_all: Follow pages until exhausted
        max_pages: Upper bound on pages when fetch_all is set
    """
    builds = _context(ctx).builds
    return run_tool(
        "list_queued_builds",
        lambda: builds.list_queued_builds(locator, page_size, fetch_all, max_pages),
        locator=locator,
        page_size=page_size,
        fetch_all=fetch_all,
    )


@full_mode_tool()
def cancel_queued_builds_for_build_type(ctx: Context, build_type_id: str) -> Dict[str, Any]:
    """Remove every queued build of one build configuration.

    Args:
        build_type_id: Build configuration ID
    """
    builds = _context(ctx).builds
    return run_tool(
        "cancel_queued_builds_for_build_type",
        lambda: builds.cancel_queued_builds_for_build_type(build_type_id),
        build_type_id=build_type_id,
    )


@full_mode_tool()
def cancel_queued_builds_by_locator(ctx: Context, locator: str) -> Dict[str, Any]:
    """Remove every queued build matching a queue locator.

    Args:
        locator: Queue locator, e.g. "project:(id:Web),branch:feature/x"
    """
    builds = _context(ctx).builds
    return run_tool(
        "cancel_queued_builds_by_locator",
        lambda: builds.cancel_queued_builds_by_locator(locator),
        locator=locator,
    )


@full_mode_tool()
def move_queued_build_to_top(ctx: Context, build_id: str) -> Dict[str, Any]:
    """Move a queued build to the head of the queue.

    Args:
        build_id: Queued build ID
    """
    builds = _context(ctx).builds
    return run_tool("move_queued_build_to_top", lambda: builds.move_queued_build_to_top(build_id), build_id=build_id)


# Build configurations

@mcp.tool()
def list_build_configs(
    ctx: Context,
    project_id: Optional[str] = None,
    project_ids: Optional[List[str]] = None,
    name_pattern: Optional[str] = None,
    include_vcs_roots: bool = False,
    include_parameters: bool = False,
    include_project_hierarchy: bool = False,
    view_mode: str = "list",
    vcs_root_filter: Optional[VcsRootFilter] = None,
    status_filter: Optional[StatusFilter] = None,
    sort_by: Optional[str] = None,
    sort_order: str = "asc",
    limit: Annotated[Optional[int], Field(ge=1, le=1000)] = None,
    offset: Optional[int] = None,
) -> Dict[str, Any]:
    """List build configurations with optional filtering, sorting and grouping.

    Args:
        project_id: Configurations in this project and its subprojects
        project_ids: Configurations directly in any of these projects
        name_pattern: Substring, or a glob when it contains *
        include_vcs_roots: Attach VCS roots
        include_parameters: Attach build parameters
        include_project_hierarchy: Attach the project path from the root
        view_mode: "list" or "project-grouped"
        vcs_root_filter: Match on VCS root URL, branch or VCS type
        status_filter: Match on last build status, paused state or activity
        sort_by: "name", "project" or "last_modified"
        sort_order: "asc" or "desc"
        limit: Page size
        offset: Start offset

    Returns:
        Dictionary with "build_configs", "total_count" and "has_more"
    """
    navigator = _context(ctx).build_configs
    vcs_filter = vcs_root_filter.model_dump(exclude_none=True) if vcs_root_filter else None
    status = status_filter.model_dump(exclude_none=True) if status_filter else None
    return run_tool(
        "list_build_configs",
        lambda: navigator.list_build_configs(
            project_id=project_id,
            project_ids=project_ids,
            name_pattern=name_pattern,
            include_vcs_roots=include_vcs_roots,
            include_parameters=include_parameters,
            include_project_hierarchy=include_project_hierarchy,
            view_mode=view_mode,
            vcs_root_filter=vcs_filter or None,
            status_filter=status or None,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        ),
        project_id=project_id,
        name_pattern=name_pattern,
        view_mode=view_mode,
        vcs_root_filter=vcs_filter,
        status_filter=status,
    )


@mcp.tool()
def get_build_config(ctx: Context, build_type_id: str) -> Dict[str, Any]:
    """Get details of a build configuration.

    Args:
        build_type_id: Build configuration ID
    """
    navigator = _context(ctx).build_configs
    return run_tool(
        "get_build_config", lambda: navigator.get_build_config(build_type_id), build_type_id=build_type_id
    )


@full_mode_tool()
def set_build_configs_paused(
    ctx: Context, build_type_ids: List[str], paused: bool, cancel_queued: bool = False
) -> Dict[str, Any]:
    """Pause or resume build configurations.

    Args:
        build_type_ids: Build configuration IDs
        paused: True to pause, False to resume
        cancel_queued: Also remove their builds from the queue

    Returns:
        Dictionary with counts of updated configurations and canceled builds
    """
    navigator = _context(ctx).build_configs
    return run_tool(
        "set_build_configs_paused",
        lambda: navigator.set_paused(build_type_ids, paused, cancel_queued),
        build_type_ids=build_type_ids,
        paused=paused,
        cancel_queued=cancel_queued,
    )


@mcp.tool()
def list_parameters(ctx: Context, build_type_id: str) -> Dict[str, Any]:
    """List the parameters of a build configuration.

    Args:
        build_type_id: Build configuration ID

    Returns:
        Dictionary with name, value and kind (env, system, build or config) per parameter
    """
    parameters = _context(ctx).parameters
    return run_tool("list_parameters", lambda: parameters.list_parameters(build_type_id), build_type_id=build_type_id)


@full_mode_tool()
def add_parameter(ctx: Context, build_type_id: str, name: str, value: str) -> Dict[str, Any]:
    """Add a parameter to a build configuration.

    Args:
        build_type_id: Build configuration ID
        name: Parameter name, e.g. env.DEPLOY_TARGET
        value: Parameter value
    """
    parameters = _context(ctx).parameters
    return run_tool(
        "add_parameter",
        lambda: parameters.add_parameter(build_type_id, name, value),
        build_type_id=build_type_id,
        name=name,
    )


@full_mode_tool()
def update_parameter(ctx: Context, build_type_id: str, name: str, value: str) -> Dict[str, Any]:
    """Change the value of an existing build configuration parameter.

    Args:
        build_type_id: Build configuration ID
        name: Parameter name
        value: New value
    """
    parameters = _context(ctx).parameters
    return run_tool(
        "update_parameter",
        lambda: parameters.update_parameter(build_type_id, name, value),
        build_type_id=build_type_id,
        name=name,
    )


@full_mode_tool()
def delete_parameter(ctx: Context, build_type_id: str, name: str) -> Dict[str, Any]:
    """Delete a parameter from a build configuration.

    Args:
        build_type_id: Build configuration ID
        name: Parameter name
    """
    parameters = _context(ctx).parameters
    return run_tool(
        "delete_parameter",
        lambda: parameters.delete_parameter(build_type_id, name),
        build_type_id=build_type_id,
        name=name,
    )


# Triggers

@mcp.tool()
def list_build_triggers(ctx: Context, build_type_id: str) -> Dict[str, Any]:
    """List the triggers of a build configuration.

    Args:
        build_type_id: Build configuration ID
    """
    triggers = _context(ctx).triggers
    return run_tool("list_build_triggers", lambda: triggers.list_triggers(build_type_id), build_type_id=build_type_id)


@mcp.tool()
def validate_build_trigger(ctx: Context, trigger_type: str, properties: Dict[str, Any]) -> Dict[str, Any]:
    """Check trigger properties without changing anything.

    Args:
        trigger_type: vcsTrigger, schedulingTrigger or buildDependencyTrigger
        properties: Trigger properties, e.g. {"schedulingPolicy": "0 0 2 * * ?"}

    Returns:
        Dictionary with "valid", "errors" and "warnings"
    """
    triggers = _context(ctx).triggers
    return run_tool(
        "validate_build_trigger",
        lambda: triggers.validate_trigger(trigger_type, properties),
        trigger_type=trigger_type,
        properties=properties,
    )


@full_mode_tool()
def manage_build_triggers(
    ctx: Context,
    build_type_id: str,
    action: str,
    trigger_type: Optional[str] = None,
    trigger_id: Optional[str] = None,
    properties: Optional[Dict[str, Any]] = None,
    enabled: Optional[bool] = None,
) -> Dict[str, Any]:
    """Add, update or delete a build trigger.

    Args:
        build_type_id: Build configuration ID
        action: "add", "update" or "delete"
        trigger_type: Trigger type, required for add
        trigger_id: Trigger ID, required for update and delete
        properties: Trigger properties
        enabled: Whether the trigger is active
    """
    triggers = _context(ctx).triggers

    def apply():
        if action == "add":
            if not trigger_type:
                raise ValidationError("trigger_type is required to add a trigger", field="trigger_type")
            return triggers.create_trigger(
                build_type_id, trigger_type, properties or {}, True if enabled is None else enabled
            )
        if action not in ("update", "delete"):
            raise ValidationError("action must be one of: add, update, delete", field="action")
        if not trigger_id:
            raise ValidationError(f"trigger_id is required to {action} a trigger", field="trigger_id")
        if action == "update":
            return triggers.update_trigger(build_type_id, trigger_id, properties, enabled)
        return triggers.delete_trigger(build_type_id, trigger_id)

    return run_tool(
        "manage_build_triggers",
        apply,
        build_type_id=build_type_id,
        action=action,
        trigger_type=trigger_type,
        trigger_id=trigger_id,
        properties=properties,
    )


# Dependencies

@mcp.tool()
def list_build_dependencies(
    ctx: Context, build_type_id: str, dependency_type: Optional[str] = None
) -> Dict[str, Any]:
    """List artifact and snapshot dependencies of a build configuration.

    Args:
        build_type_id: Build configuration ID
        dependency_type: "artifact" or "snapshot"; both when omitted
    """
    dependencies = _context(ctx).dependencies

    def fetch():
        return {
            "build_type_id": build_type_id,
            "dependencies": dependencies.list_dependencies(build_type_id, dependency_type),
        }

    return run_tool(
        "list_build_dependencies", fetch, build_type_id=build_type_id, dependency_type=dependency_type
    )


@mcp.tool()
def check_dependency_cycle(ctx: Context, source_build_type_id: str, target_build_type_id: str) -> Dict[str, Any]:
    """Check whether making source depend on target would create a cycle.

    Both finish-build triggers and snapshot dependencies are followed.

    Args:
        source_build_type_id: Configuration that would gain the dependency
        target_build_type_id: Configuration it would depend on

    Returns:
        Dictionary with "has_circular_dependency", the trigger "chain" and "snapshot_cycle"
    """
    context = _context(ctx)

    def check():
        result = context.triggers.validate_dependency_chain(source_build_type_id, target_build_type_id)
        result["snapshot_cycle"] = context.dependencies.depends_on(target_build_type_id, source_build_type_id)
        result["has_circular_dependency"] = result["has_circular_dependency"] or result["snapshot_cycle"]
        return result

    return run_tool(
        "check_dependency_cycle",
        check,
        source_build_type_id=source_build_type_id,
        target_build_type_id=target_build_type_id,
    )


@full_mode_tool()
def manage_build_dependencies(
    ctx: Context,
    build_type_id: str,
    action: str,
    dependency_type: str,
    dependency_id: Optional[str] = None,
    depends_on: Optional[str] = None,
    properties: Optional[Dict[str, Any]] = None,
    options: Optional[Dict[str, Any]] = None,
    dependency_kind: Optional[str] = None,
    disabled: Optional[bool] = None,
) -> Dict[str, Any]:
    """Add, update or delete an artifact or snapshot dependency.

    Args:
        build_type_id: Build configuration that owns the dependency
        action: "add", "update" or "delete"
        dependency_type: "artifact" or "snapshot"
        dependency_id: Dependency ID, required for update and delete
        depends_on: Upstream build configuration ID, required for add
        properties: Dependency properties, e.g. {"pathRules": "*.zip => libs"}
        options: Snapshot dependency options, e.g. {"run-build-on-the-same-agent": true}
        dependency_kind: TeamCity dependency type, e.g. artifact_dependency
        disabled: Whether the dependency is disabled
    """
    dependencies = _context(ctx).dependencies

    def apply():
        if action == "add":
            result = dependencies.add_dependency(
                build_type_id, dependency_type, depends_on, properties, options, dependency_kind, disabled
            )
        elif action in ("update", "delete"):
            if not dependency_id:
                raise ValidationError(f"dependency_id is required to {action} a dependency", field="dependency_id")
            if action == "update":
                result = dependencies.update_dependency(
                    build_type_id, dependency_type, dependency_id, depends_on, properties, options, dependency_kind, disabled
                )
            else:
                dependencies.delete_dependency(build_type_id, dependency_type, dependency_id)
                result = {"id": dependency_id}
        else:
            raise ValidationError("action must be one of: add, update, delete", field="action")
        return dict(
            result,
            success=True,
            action=action,
            build_type_id=build_type_id,
            dependency_type=dependency_type,
        )

    return run_tool(
        "manage_build_dependencies",
        apply,
        build_type_id=build_type_id,
        action=action,
        dependency_type=dependency_type,
        dependency_id=dependency_id,
        depends_on=depends_on,
    )


# Artifacts

@mcp.tool()
def list_artifacts(
    ctx: Context,
    build_id: str,
    name_filter: Optional[str] = None,
    path_filter: Optional[str] = None,
    extension: Optional[str] = None,
    min_size: Optional[int] = None,
    max_size: Optional[int] = None,
    include_nested: bool = False,
    limit: Annotated[Optional[int], Field(ge=1, le=1000)] = None,
    offset: Optional[int] = None,
    force_refresh: bool = False,
) -> Union[List[Dict[str, Any]], Dict[str, Any]]:
    """List the artifacts of a build.

    Args:
        build_id: Internal build ID
        name_filter: Glob on the file name, e.g. "*.jar"
        path_filter: Glob on the path, e.g. "reports/**"
        extension: File extension without the dot
        min_size: Minimum size in bytes
        max_size: Maximum size in bytes
        include_nested: Include files inside subdirectories
        limit: Maximum number of artifacts (default 100)
        offset: Number of artifacts to skip
        force_refresh: Bypass the artifact cache

    Returns:
        List of artifacts with name, path, size and download URL
    """
    artifacts = _context(ctx).artifacts
    return run_tool(
        "list_artifacts",
        lambda: artifacts.list_artifacts(
            build_id,
            name_filter=name_filter,
            path_filter=path_filter,
            extension=extension,
            min_size=min_size,
            max_size=max_size,
            include_nested=include_nested,
            limit=limit,
            offset=offset,
            force_refresh=force_refresh,
        ),
        build_id=build_id,
        name_filter=name_filter,
        path_filter=path_filter,
        include_nested=include_nested,
    )


@mcp.tool()
def download_artifact(
    ctx: Context,
    build_id: str,
    artifact_path: str,
    encoding: str = "base64",
    max_size: Optional[int] = None,
) -> Dict[str, Any]:
    """Download a single artifact.

    Args:
        build_id: Internal build ID
        artifact_path: Artifact path or file name
        encoding: "base64" or "text"
        max_size: Refuse artifacts larger than this many bytes

    Returns:
        Dictionary with the artifact metadata and its content
    """
    artifacts = _context(ctx).artifacts
    return run_tool(
        "download_artifact",
        lambda: artifacts.download_artifact(build_id, artifact_path, encoding, max_size),
        build_id=build_id,
        artifact_path=artifact_path,
        encoding=encoding,
    )


@mcp.tool()
def download_artifacts(
    ctx: Context,
    build_id: str,
    artifact_paths: List[str],
    encoding: str = "base64",
    max_size: Optional[int] = None,
) -> Union[List[Dict[str, Any]], Dict[str, Any]]:
    """Download several artifacts in parallel.

    Args:
        build_id: Internal build ID
        artifact_paths: Artifact paths or file names
        encoding: "base64" or "text"
        max_size: Per-artifact size limit in bytes

    Returns:
        One entry per requested path; failed entries carry an "error" instead of content
    """
    artifacts = _context(ctx).artifacts
    return run_tool(
        "download_artifacts",
        lambda: artifacts.download_artifacts(build_id, artifact_paths, encoding, max_size),
        build_id=build_id,
        artifact_paths=artifact_paths,
        encoding=encoding,
    )


# Tests and problems

@mcp.tool()
def get_test_summary(
    ctx: Context, build_id: str, include_failed_tests: bool = False, include_problems: bool = False
) -> Dict[str, Any]:
    """Summarize the test results of a build.

    Args:
        build_id: Internal build ID
        include_failed_tests: Attach failed test details
        include_problems: Attach build problems

    Returns:
        Dictionary with totals, passed/failed/ignored/muted counts and success_rate
    """
    results = _context(ctx).test_results
    return run_tool(
        "get_test_summary",
        lambda: results.get_test_summary(build_id, include_failed_tests, include_problems),
        build_id=build_id,
    )


@mcp.tool()
def list_test_failures(
    ctx: Context,
    build_id: str,
    page_size: PageSize = 100,
    fetch_all: bool = False,
    max_pages: Optional[int] = None,
) -> Dict[str, Any]:
    """List failed tests of a build.

    Args:
        build_id: Internal build ID
        page_size: Tests per request (1-1000)
        fetch_all: Follow pages until exhausted
        max_pages: Upper bound on pages when fetch_all is set
    """
    results = _context(ctx).test_results
    return run_tool(
        "list_test_failures",
        lambda: results.list_test_failures(build_id, page_size, fetch_all, max_pages),
        build_id=build_id,
        page_size=page_size,
        fetch_all=fetch_all,
    )


@mcp.tool()
def list_build_problems(ctx: Context, build_id: str, categorize: bool = False) -> Any:
    """List build problems such as compilation errors or non-zero exit codes.

    Args:
        build_id: Internal build ID
        categorize: Group problems by type
    """
    results = _context(ctx).test_results
    return run_tool(
        "list_build_problems",
        lambda: results.list_build_problems(build_id, categorize),
        build_id=build_id,
        categorize=categorize,
    )


# Changes and branches

@mcp.tool()
def list_changes(
    ctx: Context,
    locator: Optional[str] = None,
    project_id: Optional[str] = None,
    build_id: Optional[str] = None,
    page_size: PageSize = 100,
    fetch_all: bool = False,
    max_pages: Optional[int] = None,
) -> Dict[str, Any]:
    """List VCS changes.

    Args:
        locator: Raw change locator, e.g. "username:jdoe"
        project_id: Only changes in this project
        build_id: Only changes included in this build
        page_size: Changes per request (1-1000)
        fetch_all: Follow pages until exhausted
        max_pages: Upper bound on pages when fetch_all is set

    Returns:
        Dictionary with revision, author, date, comment and files per change
    """
    changes = _context(ctx).changes
    return run_tool(
        "list_changes",
        lambda: changes.list_changes(locator, project_id, build_id, page_size, fetch_all, max_pages),
        locator=locator,
        project_id=project_id,
        build_id=build_id,
    )


@mcp.tool()
def list_branches(ctx: Context, project_id: Optional[str] = None, build_type_id: Optional[str] = None) -> Dict[str, Any]:
    """List the branches recent builds ran on.

    Args:
        project_id: Project ID
        build_type_id: Build configuration ID, takes precedence over project_id
    """
    changes = _context(ctx).changes
    return run_tool(
        "list_branches",
        lambda: changes.list_branches(project_id, build_type_id),
        project_id=project_id,
        build_type_id=build_type_id,
    )


# VCS roots

@mcp.tool()
def list_vcs_roots(
    ctx: Context,
    project_id: Optional[str] = None,
    page_size: PageSize = 100,
    fetch_all: bool = False,
    max_pages: Optional[int] = None,
) -> Dict[str, Any]:
    """List VCS roots.

    Args:
        project_id: Only roots visible in this project
        page_size: Roots per request (1-1000)
        fetch_all: Follow pages until exhausted
        max_pages: Upper bound on pages when fetch_all is set
    """
    vcs_roots = _context(ctx).vcs_roots
    return run_tool(
        "list_vcs_roots",
        lambda: vcs_roots.list_vcs_roots(project_id, page_size, fetch_all, max_pages),
        project_id=project_id,
        page_size=page_size,
        fetch_all=fetch_all,
    )


@mcp.tool()
def get_vcs_root(ctx: Context, vcs_root_id: str) -> Dict[str, Any]:
    """Get a VCS root with its properties.

    Args:
        vcs_root_id: VCS root ID
    """
    vcs_roots = _context(ctx).vcs_roots
    return run_tool("get_vcs_root", lambda: vcs_roots.get_vcs_root(vcs_root_id), vcs_root_id=vcs_root_id)


@full_mode_tool()
def set_vcs_root_property(ctx: Context, vcs_root_id: str, name: str, value: str) -> Dict[str, Any]:
    """Set a single VCS root property such as url, branch or branchSpec.

    Args:
        vcs_root_id: VCS root ID
        name: Property name
        value: Property value
    """
    vcs_roots = _context(ctx).vcs_roots
    return run_tool(
        "set_vcs_root_property",
        lambda: vcs_roots.set_property(vcs_root_id, name, value),
        vcs_root_id=vcs_root_id,
        name=name,
        value=value,
    )


@full_mode_tool()
def delete_vcs_root_property(ctx: Context, vcs_root_id: str, name: str) -> Dict[str, Any]:
    """Delete a single VCS root property.

    Args:
        vcs_root_id: VCS root ID
        name: Property name
    """
    vcs_roots = _context(ctx).vcs_roots
    return run_tool(
        "delete_vcs_root_property",
        lambda: vcs_roots.delete_property(vcs_root_id, name),
        vcs_root_id=vcs_root_id,
        name=name,
    )


@full_mode_tool()
def update_vcs_root_properties(
    ctx: Context,
    vcs_root_id: str,
    url: Optional[str] = None,
    branch: Optional[str] = None,
    branch_spec: Optional[Union[str, List[str]]] = None,
    checkout_rules: Optional[str] = None,
) -> Dict[str, Any]:
    """Update the common properties of a VCS root in one call.

    Args:
        vcs_root_id: VCS root ID
        url: Repository URL
        branch: Default branch, e.g. refs/heads/main
        branch_spec: Branch specification as a newline-delimited string or a list of rules
        checkout_rules: Checkout rules

    Returns:
        Dictionary with the number of properties updated
    """
    vcs_roots = _context(ctx).vcs_roots
    return run_tool(
        "update_vcs_root_properties",
        lambda: vcs_roots.update_properties(vcs_root_id, url, branch, branch_spec, checkout_rules),
        vcs_root_id=vcs_root_id,
        url=url,
        branch=branch,
        branch_spec=branch_spec,
    )


async def print_tools():
    tools = await mcp.list_tools()
    print(f"Available tools ({MCP_MODE} mode):")
    for tool in tools:
        print(f"- {tool.name}")


def main():
    parser = argparse.ArgumentParser(description="TeamCity MCP Server")
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        default=os.getenv("MCP_TRANSPORT", "stdio"),
        help="MCP transport (default: stdio or from MCP_TRANSPORT env var)",
    )
    parser.add_argument("--list-tools", action="store_true", help="Print the registered tools and exit")
    args = parser.parse_args()

    if args.list_tools:
        asyncio.run(print_tools())
        return

    info_log(f"Starting TeamCity MCP server {__version__} ({args.transport} transport, {MCP_MODE} mode)")
    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
