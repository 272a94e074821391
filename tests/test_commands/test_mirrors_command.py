"""Tests for the mirrors command group."""

import json
from unittest.mock import AsyncMock, patch

import httpx

from patchline.core.errors import MirrorDiscoveryError, PatchlineError
from patchline.core.types import ProbeResult
from patchline.sources.descriptor import MirrorDescriptor
from patchline.sources.discovery import DiscoveryResult


class TestMirrorsList:
    """Test mirrors list."""

    def test_empty(self, invoke):
        """Test listing with no descriptors."""
        result = invoke("-o", "plain", "mirrors", "list")
        assert result.exit_code == 0
        assert "No mirror descriptors" in result.output

    def test_json(self, invoke, static_mirror, cli_config):
        """Test invalid files are listed with their error."""
        (cli_config.resolved_mirrors_dir / "broken.mirror.json").write_text("{")

        result = invoke("-o", "json", "mirrors", "list")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [entry["file"] for entry in data] == ["broken.mirror.json", "community-cdn.mirror.json"]
        assert data[0]["id"] is None
        assert data[0]["error"]
        assert data[1]["id"] == "community-cdn"
        assert data[1]["type"] == "pattern"
        assert data[1]["enabled"] is True

    def test_table(self, invoke, static_mirror):
        """Test the rich table lists the mirror."""
        result = invoke("-o", "plain", "mirrors", "list")
        assert result.exit_code == 0
        assert "community-cdn" in result.output
        assert "enabled" in result.output


class TestMirrorsAddRemove:
    """Test mirrors add and remove."""

    def test_add_enables(self, invoke, cli_config, tmp_path, pattern_descriptor_data):
        """Test a descriptor is validated, enabled and installed."""
        pattern_descriptor_data["enabled"] = False
        source_file = tmp_path / "new.json"
        source_file.write_text(json.dumps(pattern_descriptor_data))

        result = invoke("-o", "plain", "mirrors", "add", str(source_file))

        assert result.exit_code == 0
        installed = cli_config.resolved_mirrors_dir / "community-cdn.mirror.json"
        assert MirrorDescriptor.from_file(installed).enabled is True

    def test_add_replaces(self, invoke, cli_config, static_mirror, tmp_path):
        """Test adding an existing id replaces the old descriptor."""
        source_file = tmp_path / "new.json"
        source_file.write_text(json.dumps({**static_mirror, "priority": 250}))

        result = invoke("-o", "plain", "mirrors", "add", "--no-enable", str(source_file))

        assert result.exit_code == 0
        assert "Replacing existing mirror" in result.output
        files = list(cli_config.resolved_mirrors_dir.glob("*.mirror.json"))
        assert len(files) == 1
        assert MirrorDescriptor.from_file(files[0]).priority == 250

    def test_add_invalid(self, invoke, tmp_path):
        """Test an invalid descriptor is rejected."""
        source_file = tmp_path / "bad.json"
        source_file.write_text(json.dumps({"schemaVersion": 1, "id": "x"}))

        result = invoke("-o", "plain", "mirrors", "add", str(source_file))

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_remove(self, invoke, cli_config, static_mirror):
        """Test removing an installed mirror."""
        result = invoke("-o", "plain", "mirrors", "remove", "community-cdn")

        assert result.exit_code == 0
        assert not list(cli_config.resolved_mirrors_dir.glob("*.mirror.json"))

    def test_remove_unknown(self, invoke):
        """Test removing an unknown mirror fails."""
        result = invoke("-o", "plain", "mirrors", "remove", "nope")
        assert result.exit_code == 1
        assert "No mirror with id 'nope'" in result.output


class TestMirrorsProbe:
    """Test mirrors probe."""

    def test_json(self, invoke):
        """Test probe results are reported."""
        results = [
            ProbeResult(source_id="slow", url="https://slow.test/", available=True, latency_ms=300),
            ProbeResult(source_id="down", url="https://down.test/", error="HTTP 503"),
        ]
        with patch("patchline.commands.mirrors._probe", new=AsyncMock(return_value=results)) as probe:
            result = invoke("-o", "json", "mirrors", "probe", "--force")

        assert result.exit_code == 0
        assert probe.await_args.args[1] is True
        data = json.loads(result.stdout)
        assert [entry["source_id"] for entry in data] == ["slow", "down"]

    def test_table(self, invoke):
        """Test the table shows availability and latency."""
        results = [ProbeResult(source_id="fast", url="https://fast.test/", available=True, latency_ms=12)]
        with patch("patchline.commands.mirrors._probe", new=AsyncMock(return_value=results)):
            result = invoke("-o", "plain", "mirrors", "probe")

        assert result.exit_code == 0
        assert "fast" in result.output
        assert "12 ms" in result.output

    def test_error(self, invoke):
        """Test engine errors abort the command."""
        with patch("patchline.commands.mirrors._probe", new=AsyncMock(side_effect=PatchlineError("boom"))):
            result = invoke("-o", "plain", "mirrors", "probe")

        assert result.exit_code == 1
        assert "Error: boom" in result.output


def _discovered(data):
    descriptor = MirrorDescriptor.from_dict({**data, "enabled": False})
    return DiscoveryResult(strategy="json-api", base_url="https://cdn.example.org", descriptor=descriptor)


class TestMirrorsDiscover:
    """Test mirrors discover."""

    def test_json_without_saving(self, invoke, cli_config, pattern_descriptor_data):
        """Test the generated descriptor is printed and nothing is written."""
        result_value = _discovered(pattern_descriptor_data)
        with patch("patchline.commands.mirrors._discover", new=AsyncMock(return_value=result_value)) as discover:
            result = invoke("-o", "json", "mirrors", "discover", "cdn.example.org")

        assert result.exit_code == 0
        assert discover.await_args.args[1] == "cdn.example.org"
        data = json.loads(result.stdout)
        assert data["strategy"] == "json-api"
        assert data["saved"] is None
        assert data["descriptor"]["id"] == "community-cdn"
        assert data["descriptor"]["enabled"] is False
        assert not list(cli_config.resolved_mirrors_dir.glob("*.mirror.json"))

    def test_save_with_id(self, invoke, cli_config, pattern_descriptor_data):
        """Test --save --id installs an enabled descriptor under the new id."""
        result_value = _discovered(pattern_descriptor_data)
        with patch("patchline.commands.mirrors._discover", new=AsyncMock(return_value=result_value)):
            result = invoke("-o", "plain", "mirrors", "discover", "cdn.example.org", "--save", "--id", "my-cdn")

        assert result.exit_code == 0
        assert "Detected pattern mirror 'my-cdn'" in result.output
        saved = MirrorDescriptor.from_file(cli_config.resolved_mirrors_dir / "my-cdn.mirror.json")
        assert saved.enabled is True
        assert saved.pattern.base_url == "https://cdn.example.org/game"

    def test_save_replaces_disabled(self, invoke, cli_config, static_mirror, pattern_descriptor_data):
        """Test saving over an existing id with --no-enable."""
        result_value = _discovered(pattern_descriptor_data)
        with patch("patchline.commands.mirrors._discover", new=AsyncMock(return_value=result_value)):
            result = invoke("-o", "plain", "mirrors", "discover", "cdn.example.org", "--save", "--no-enable")

        assert result.exit_code == 0
        assert "Replacing existing mirror 'community-cdn'" in result.output
        files = list(cli_config.resolved_mirrors_dir.glob("*.mirror.json"))
        assert len(files) == 1
        assert MirrorDescriptor.from_file(files[0]).enabled is False

    def test_invalid_id(self, invoke, pattern_descriptor_data):
        """Test an unusable --id is rejected."""
        result_value = _discovered(pattern_descriptor_data)
        with patch("patchline.commands.mirrors._discover", new=AsyncMock(return_value=result_value)):
            result = invoke("-o", "plain", "mirrors", "discover", "cdn.example.org", "--id", "../x")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_not_recognised(self, invoke):
        """Test discovery failures abort the command."""
        error = MirrorDiscoveryError("Could not detect a mirror layout at https://x.test")
        with patch("patchline.commands.mirrors._discover", new=AsyncMock(side_effect=error)):
            result = invoke("-o", "plain", "mirrors", "discover", "x.test")

        assert result.exit_code == 1
        assert "Could not detect a mirror layout" in result.output

    def test_end_to_end(self, invoke, cli_config):
        """Test the command drives real discovery over a mock transport."""
        routes = {"https://files.example.net/index.json": {"hytale": {"release": {"linux": {"patch": {}}}}}}

        def handler(request):
            body = routes.get(str(request.url))
            return httpx.Response(200, json=body) if body is not None else httpx.Response(404)

        real_client = httpx.AsyncClient

        def mock_client(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        with patch("patchline.commands.mirrors.httpx.AsyncClient", side_effect=mock_client):
            result = invoke("-o", "json", "mirrors", "discover", "https://files.example.net", "--save")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["strategy"] == "json-index"
        assert data["descriptor"]["jsonIndex"]["structure"] == "grouped"
        saved = MirrorDescriptor.from_file(cli_config.resolved_mirrors_dir / "files-example.mirror.json")
        assert saved.enabled is True
