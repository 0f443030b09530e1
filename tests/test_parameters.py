import pytest

from teamcity_mcp.errors import (
    BuildConfigurationNotFoundError,
    ParameterNotFoundError,
    TeamCityNotFoundError,
    ValidationError,
)
from teamcity_mcp.parameters import BuildParameterManager, parameter_kind

PARAMETERS = {"count": 3, "property": [
    {"name": "env.DEPLOY_TARGET", "value": "staging"},
    {"name": "system.debug", "value": "true", "inherited": True},
    {"name": "release.channel", "value": "beta", "type": {"rawValue": "select data_1='beta' data_2='stable'"}},
]}


@pytest.fixture
def parameters(client):
    client.list_build_parameters.return_value = PARAMETERS
    return BuildParameterManager(client)


@pytest.mark.parametrize("name, kind", [
    ("env.PATH", "env"),
    ("system.debug", "system"),
    ("teamcity.build.branch", "system"),
    ("build.number", "build"),
    ("deploy.region", "config"),
])
def test_parameter_kind(name, kind):
    assert parameter_kind(name) == kind


def test_list_parameters(parameters, client):
    result = parameters.list_parameters("App_Build")
    assert result["count"] == 3
    assert result["parameters"] == [
        {"name": "env.DEPLOY_TARGET", "value": "staging", "kind": "env"},
        {"name": "system.debug", "value": "true", "kind": "system", "inherited": True},
        {
            "name": "release.channel",
            "value": "beta",
            "kind": "config",
            "spec": "select data_1='beta' data_2='stable'",
        },
    ]
    client.list_build_parameters.assert_called_once_with("App_Build")


def test_list_parameters_for_missing_config(parameters, client):
    client.list_build_parameters.side_effect = TeamCityNotFoundError("Nope")
    with pytest.raises(BuildConfigurationNotFoundError):
        parameters.list_parameters("Nope")


def test_add_parameter(parameters, client):
    result = parameters.add_parameter("App_Build", "env.RETRIES", 3)
    assert result == {"success": True, "action": "add_parameter", "build_type_id": "App_Build", "name": "env.RETRIES"}
    client.add_build_parameter.assert_called_once_with("App_Build", "env.RETRIES", "3")


def test_add_rejects_duplicates_and_bad_names(parameters, client):
    with pytest.raises(ValidationError, match="Parameter 'env.DEPLOY_TARGET' already exists in App_Build"):
        parameters.add_parameter("App_Build", "env.DEPLOY_TARGET", "prod")
    with pytest.raises(ValidationError, match="Invalid parameter name: env DEPLOY"):
        parameters.add_parameter("App_Build", "env DEPLOY", "prod")
    client.add_build_parameter.assert_not_called()


def test_update_parameter(parameters, client):
    parameters.update_parameter("App_Build", "system.debug", False)
    client.set_build_parameter.assert_called_once_with("App_Build", "system.debug", "false")

    with pytest.raises(ParameterNotFoundError, match="Parameter 'env.MISSING' not found in App_Build"):
        parameters.update_parameter("App_Build", "env.MISSING", "x")


def test_delete_parameter(parameters, client):
    result = parameters.delete_parameter("App_Build", "env.DEPLOY_TARGET")
    assert result["action"] == "delete_parameter"
    client.delete_build_parameter.assert_called_once_with("App_Build", "env.DEPLOY_TARGET")

    client.delete_build_parameter.side_effect = TeamCityNotFoundError("env.GONE")
    with pytest.raises(ParameterNotFoundError):
        parameters.delete_parameter("App_Build", "env.GONE")
