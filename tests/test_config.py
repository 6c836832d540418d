import json
import os
from tempfile import NamedTemporaryFile
from unittest import mock

import pytest

from descil.config import LOCAL_CONFIG, Configuration, ServiceSettings, get_config
from descil.exceptions import ConfigurationError

URI = "https://descil.example.com/apps/mturk2/api/service.ashx"


@pytest.fixture
def in_tempdir(tmp_path):
    cwd = os.getcwd()
    os.chdir(str(tmp_path))
    yield tmp_path
    os.chdir(cwd)


@pytest.fixture
def clean_environ():
    environ = {k: v for k, v in os.environ.items() if not k.startswith("DESCIL_")}
    with mock.patch.dict(os.environ, environ, clear=True):
        yield


@pytest.fixture
def no_global_config(tmp_path):
    with mock.patch("descil.config.os.path.expanduser") as expanduser:
        expanduser.return_value = str(tmp_path / "missing-global-config")
        yield


class TestConfigurationUnitTests(object):
    def test_register_new_variable(self):
        config = Configuration()
        config.register("descil_timeout", float)
        config.extend({"descil_timeout": 1.0})
        config.ready = True
        assert config.get("descil_timeout", 2.0) == 1.0

    def test_register_duplicate_variable_raises(self):
        config = Configuration()
        config.register("descil_timeout", float)
        with pytest.raises(KeyError):
            config.register("descil_timeout", float)

    def test_register_unknown_type_raises(self):
        config = Configuration()
        with pytest.raises(TypeError):
            config.register("descil_timeout", object)

    def test_bytes_are_not_a_supported_type(self):
        config = Configuration()
        with pytest.raises(TypeError):
            config.register("descil_service_key", bytes)

    def test_type_mismatch_on_extend(self):
        config = get_config()
        with pytest.raises(TypeError):
            config.extend({"descil_timeout": "soon"})

    def test_type_mismatch_with_cast_types(self):
        config = get_config()
        config.ready = True
        config.extend({"loglevel": 10.0}, cast_types=True)
        assert config.get("loglevel") == 10

    def test_type_cast_types_failure_raises(self):
        config = get_config()
        config.ready = True
        with pytest.raises(TypeError):
            config.extend({"descil_timeout": "A NUMBER"}, cast_types=True)

    def test_get_before_ready_is_not_possible(self):
        config = get_config()
        config.extend({"descil_project_code": "P1"})
        with pytest.raises(RuntimeError):
            config.get("descil_project_code", None)

    def test_layering_of_configs(self):
        config = get_config()
        config.extend({"descil_project_code": "P1"})
        config.ready = True
        assert config.get("descil_project_code") == "P1"
        config.extend({"descil_project_code": "P2"})
        assert config.get("descil_project_code") == "P2"

    def test_setting_unknown_key_is_ignored(self):
        config = Configuration()
        config.ready = True
        config.extend({"descil_timeout": 1.0})
        assert config.get("descil_timeout", None) is None

    def test_setting_value_that_doesnt_validate_fails(self):
        config = get_config()
        config.ready = True
        with pytest.raises(ValueError) as excinfo:
            config.extend({"descil_uri": "ftp://descil.example.com"})
        assert "descil_uri" in str(excinfo.value)

    def test_get_without_default_raises(self):
        config = get_config()
        config.ready = True
        with pytest.raises(KeyError):
            config.get("descil_project_code")

    def test_get_strips_strings(self):
        config = get_config()
        config.ready = True
        config.extend({"descil_project_code": " P1 "})
        assert config.get("descil_project_code") == "P1"

    def test_strict_extending_blocks_unknown_keys(self):
        config = get_config()
        config.ready = True
        with pytest.raises(KeyError):
            config.extend({"unknown_key": 1}, strict=True)

    def test_setting_values_supports_synonyms(self):
        config = get_config()
        config.ready = True
        config.extend({"key": "abc", "project": "P1", "uri": URI})
        assert config.get("descil_service_key") == "abc"
        assert config.get("descil_project_code") == "P1"
        assert config.get("descil_uri") == URI

    def test_loading_keys_from_config_file(self):
        config = get_config()
        project_with_trailing_whitespace = "P1    "
        contents = """
[DeSciL]
project = {}
timeout = 2.5
loglevel = 10
""".format(
            project_with_trailing_whitespace
        )

        with NamedTemporaryFile() as configfile:
            configfile.write(contents.encode("utf-8"))
            configfile.flush()
            config.load_from_file(configfile.name)

        config.ready = True
        assert config.get("descil_project_code") == "P1"  # whitespace stripped
        assert config.get("descil_timeout") == 2.5
        assert config.get("loglevel") == 10

    def test_bad_value_in_config_file_is_a_configuration_error(self):
        config = get_config()
        with NamedTemporaryFile() as configfile:
            configfile.write(b"[DeSciL]\ntimeout = soon\n")
            configfile.flush()
            with pytest.raises(ConfigurationError) as excinfo:
                config.load_from_file(configfile.name)
        assert isinstance(excinfo.value.__cause__, TypeError)

    def test_unknown_key_in_strict_config_file_is_a_configuration_error(self):
        config = get_config()
        with NamedTemporaryFile() as configfile:
            configfile.write(b"[DeSciL]\nnum_participants = 3\n")
            configfile.flush()
            with pytest.raises(ConfigurationError):
                config.load_from_file(configfile.name, strict=True)

    def test_loading_keys_from_json_file(self, tmp_path):
        path = tmp_path / "descil.conf.json"
        path.write_text(
            json.dumps({"key": "abc", "project": "P1", "uri": URI, "timeout": "3"})
        )
        config = get_config()
        config.load_from_json(str(path))
        config.ready = True
        assert config.get("descil_service_key") == "abc"
        assert config.get("descil_timeout") == 3.0

    def test_json_file_must_hold_an_object(self, tmp_path):
        path = tmp_path / "descil.conf.json"
        path.write_text(json.dumps(["abc"]))
        with pytest.raises(ConfigurationError):
            get_config().load_from_json(str(path))

    def test_json_file_with_uri_without_scheme_is_a_configuration_error(
        self, tmp_path
    ):
        path = tmp_path / "descil.conf.json"
        path.write_text(
            json.dumps({"key": "abc", "project": "P1", "uri": "www.descil.ethz.ch/api"})
        )
        with pytest.raises(ConfigurationError) as excinfo:
            get_config().load_from_json(str(path))
        assert "descil_uri" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_json_file_with_mistyped_value_is_a_configuration_error(self, tmp_path):
        path = tmp_path / "descil.conf.json"
        path.write_text(json.dumps({"key": "abc", "project": "P1", "timeout": [3]}))
        with pytest.raises(ConfigurationError):
            get_config().load_from_json(str(path))

    def test_unparseable_json_file_is_a_configuration_error(self, tmp_path):
        path = tmp_path / "descil.conf.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            get_config().load_from_json(str(path))

    def test_missing_json_file_is_a_configuration_error(self, tmp_path):
        with pytest.raises(ConfigurationError):
            get_config().load_from_json(str(tmp_path / "missing.json"))

    def test_loading_keys_from_environment_variables(self, clean_environ):
        config = get_config()
        os.environ["DESCIL_PROJECT_CODE"] = "P2"
        os.environ["DESCIL_TIMEOUT"] = "1.5"
        config.load_from_environment()
        config.ready = True
        assert config.get("descil_project_code") == "P2"
        assert config.get("descil_timeout") == 1.5

    def test_bad_environment_value_is_a_configuration_error(self, clean_environ):
        os.environ["DESCIL_TIMEOUT"] = "-1"
        with pytest.raises(ConfigurationError):
            get_config().load_from_environment()


class TestConfigurationIntegrationTests(object):
    def test_load_reads_local_config_file(
        self, in_tempdir, clean_environ, no_global_config
    ):
        (in_tempdir / LOCAL_CONFIG).write_text(
            "[DeSciL]\nkey = abc\nproject = P1\nuri = {}\n".format(URI)
        )
        config = get_config()
        config.load()
        assert config.get("descil_service_key") == "abc"
        assert config.get("loglevel") == 20

    def test_environment_overrides_local_config(
        self, in_tempdir, clean_environ, no_global_config
    ):
        (in_tempdir / LOCAL_CONFIG).write_text("[DeSciL]\nproject = P1\n")
        os.environ["DESCIL_PROJECT_CODE"] = "P2"
        config = get_config()
        config.load()
        assert config.get("descil_project_code") == "P2"

    def test_load_with_bad_json_file_is_a_configuration_error(
        self, in_tempdir, clean_environ, no_global_config
    ):
        (in_tempdir / "descil.conf.json").write_text(
            json.dumps({"uri": "www.descil.ethz.ch/api"})
        )
        config = get_config()
        with pytest.raises(ConfigurationError):
            config.load(json_file="descil.conf.json")
        assert not config.ready


class TestServiceSettings(object):
    def test_valid_settings(self):
        settings = ServiceSettings(service_key="abc", project_code="P1", uri=URI)
        assert not settings.offline

    @pytest.mark.parametrize(
        "kw",
        [
            {"service_key": "", "project_code": "P1", "uri": URI},
            {"service_key": None, "project_code": "P1", "uri": URI},
            {"service_key": "abc", "project_code": "", "uri": URI},
            {"service_key": "abc", "project_code": "P1"},
            {"service_key": "abc", "project_code": "P1", "codes_file": "/no/file"},
        ],
    )
    def test_invalid_settings_raise(self, kw):
        with pytest.raises(ConfigurationError):
            ServiceSettings(**kw)

    def test_codes_file_alone_is_offline(self, codes_file):
        settings = ServiceSettings(
            service_key="abc", project_code="P1", codes_file=codes_file
        )
        assert settings.offline

    def test_from_config(self):
        config = get_config()
        config.ready = True
        config.extend({"key": "abc", "project": "P1", "uri": URI, "timeout": 4.0})
        settings = ServiceSettings.from_config(config)
        assert settings == ServiceSettings(
            service_key="abc", project_code="P1", uri=URI, timeout=4.0
        )


class TestServiceFromConfig(object):
    def test_builds_online_service(self):
        from descil.service import DescilService, descil_service_from_config

        config = get_config()
        config.ready = True
        config.extend({"key": "abc", "project": "P1", "uri": URI})
        service = descil_service_from_config(config)
        assert type(service) is DescilService
        assert service.uri == URI

    def test_builds_offline_service_from_codes_file(self, codes_file):
        from descil.service import OfflineDescilService, descil_service_from_config

        config = get_config()
        config.ready = True
        config.extend({"key": "abc", "project": "P1", "file": codes_file})
        service = descil_service_from_config(config)
        assert isinstance(service, OfflineDescilService)

    def test_uses_injected_registry(self):
        from descil.registry import CodeRegistry
        from descil.service import descil_service_from_config

        registry = CodeRegistry()
        config = get_config()
        config.ready = True
        config.extend({"key": "abc", "project": "P1", "uri": URI})
        service = descil_service_from_config(config, registry=registry)
        assert service.registry is registry

    def test_missing_uri_and_file_fails_at_startup(self):
        from descil.service import descil_service_from_config

        config = get_config()
        config.ready = True
        config.extend({"key": "abc", "project": "P1"})
        with pytest.raises(ConfigurationError):
            descil_service_from_config(config)
