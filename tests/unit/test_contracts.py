"""
Unit tests for OpenAPI contract loading and compliance checks.
"""

import json

import pytest

MINIMAL_SPEC = """
openapi: 3.0.3
info:
  title: Minimal API
  version: 0.1.0
paths:
  /api/items:
    get:
      responses:
        "200":
          description: ok
          content:
            application/json:
              schema:
                $ref: "#/components/schemas/ItemList"
components:
  schemas:
    ItemList:
      type: object
      required: [data]
      properties:
        data:
          type: array
"""


@pytest.fixture
def public_api(project_root):
    from meshcheck.contracts import OpenAPIDocument

    return OpenAPIDocument.load(str(project_root / "contracts" / "openapi" / "public-api.yaml"))


class TestOpenAPIDocumentLoading:
    """Test loading and validating documents."""

    def test_shipped_contracts_valid(self, project_root):
        """Test that every shipped contract loads and validates."""
        from meshcheck.contracts import load_contract_dir

        documents = load_contract_dir(str(project_root / "contracts" / "openapi"))

        assert set(documents) == {"admin-api.yaml", "public-api.yaml"}
        assert documents["public-api.yaml"].title == "Public Website API"
        assert documents["admin-api.yaml"].openapi_version.startswith("3.0")

    def test_malformed_yaml(self, temp_dir):
        """Test that a syntax error raises instead of skipping the checks."""
        from meshcheck.contracts import ContractLoadError, validate_specification

        path = temp_dir / "broken.yaml"
        path.write_text("openapi: 3.0.3\npaths: {unclosed\n")

        with pytest.raises(ContractLoadError, match="not valid YAML"):
            validate_specification(str(path))

    def test_missing_file(self, temp_dir):
        from meshcheck.contracts import ContractLoadError, validate_specification

        with pytest.raises(ContractLoadError, match="Cannot read OpenAPI document"):
            validate_specification(str(temp_dir / "absent.yaml"))

    def test_non_mapping(self, temp_dir):
        from meshcheck.contracts import ContractLoadError, OpenAPIDocument

        path = temp_dir / "list.yaml"
        path.write_text("- openapi\n")

        with pytest.raises(ContractLoadError, match="mapping"):
            OpenAPIDocument.load(str(path))

    def test_structure_errors(self, temp_dir):
        """Test that structural problems are all reported."""
        from meshcheck.contracts import ContractValidationError, OpenAPIDocument

        path = temp_dir / "bad.yaml"
        path.write_text("""
openapi: "2.0"
info: {title: Bad}
paths:
  api/items:
    get: {}
""")

        with pytest.raises(ContractValidationError) as exc_info:
            OpenAPIDocument.load(str(path))

        errors = exc_info.value.errors
        assert any("openapi" in e for e in errors)
        assert "Missing required field: info.version" in errors
        assert any("api/items" in e for e in errors)

    def test_unresolved_local_ref(self, temp_dir):
        from meshcheck.contracts import ContractValidationError, OpenAPIDocument

        path = temp_dir / "refs.yaml"
        path.write_text(MINIMAL_SPEC.replace("#/components/schemas/ItemList", "#/components/schemas/Missing"))

        with pytest.raises(ContractValidationError, match="Unresolved reference '#/components/schemas/Missing'"):
            OpenAPIDocument.load(str(path))

    def test_external_file_refs(self, temp_dir):
        """Test relative file references are resolved and inlined."""
        from meshcheck.contracts import OpenAPIDocument, check_schema

        (temp_dir / "schemas.yaml").write_text("""
Item:
  type: object
  required: [id]
  properties:
    id: {type: string}
""")
        (temp_dir / "api.json").write_text(json.dumps({
            "openapi": "3.1.0",
            "info": {"title": "External", "version": "1"},
            "paths": {"/items/{id}": {"get": {"responses": {"200": {
                "description": "ok",
                "content": {"application/json": {"schema": {"$ref": "schemas.yaml#/Item"}}},
            }}}}},
        }))

        document = OpenAPIDocument.load(str(temp_dir / "api.json"))

        assert check_schema(document, "GET", "/items/1", 200, {"id": "1"}) == []
        assert check_schema(document, "GET", "/items/1", 200, {}) == ["Missing required field: id"]

    def test_missing_external_file(self, temp_dir):
        from meshcheck.contracts import ContractValidationError, OpenAPIDocument

        path = temp_dir / "api.yaml"
        path.write_text(MINIMAL_SPEC.replace("#/components/schemas/ItemList", "other.yaml#/ItemList"))

        with pytest.raises(ContractValidationError, match="Unresolved reference 'other.yaml#/ItemList'"):
            OpenAPIDocument.load(str(path))

    def test_load_contract_dir_missing(self, temp_dir):
        from meshcheck.contracts import ContractLoadError, load_contract_dir

        with pytest.raises(ContractLoadError):
            load_contract_dir(str(temp_dir / "nowhere"))


class TestOperationLookup:
    """Test matching concrete paths to documented templates."""

    def test_literal_path(self, public_api):
        operation = public_api.find_operation("get", "/api/news")

        assert operation.path_template == "/api/news"
        assert operation.method == "GET"
        assert operation.path_params == {}

    def test_templated_path(self, public_api):
        operation = public_api.find_operation("GET", "/api/news/n-42")

        assert operation.path_template == "/api/news/{news_id}"
        assert operation.path_params == {"news_id": "n-42"}

    @pytest.mark.parametrize("path", ["/api/news/", "/api/news?page=2"])
    def test_path_normalization(self, public_api, path):
        assert public_api.find_operation("GET", path).path_template == "/api/news"

    def test_undocumented(self, public_api):
        assert public_api.find_operation("GET", "/api/research") is None
        assert public_api.find_operation("DELETE", "/api/news") is None
        assert public_api.find_operation("GET", "/api/news/a/b") is None
        assert public_api.has_path("/api/news/a") is True
        assert public_api.has_path("/api/research") is False

    def test_statuses(self, public_api):
        operation = public_api.find_operation("GET", "/api/news/x")

        assert public_api.documented_statuses(operation) == ["200", "404"]
        assert public_api.success_statuses(operation) == [200]


class TestResponseSchemas:
    """Test response schema extraction and body validation."""

    def test_valid_body(self, public_api):
        from meshcheck.contracts import check_schema

        body = {
            "data": [{"news_id": "n-1", "title": "t", "summary": None}],
            "pagination": {"page": 1, "page_size": 20, "total": 1},
        }

        assert check_schema(public_api, "GET", "/api/news", 200, body) == []

    def test_invalid_body(self, public_api):
        """Test nested errors are reported with their field paths."""
        from meshcheck.contracts import check_schema

        body = {"data": [{"news_id": 7}], "pagination": {"page": 1}}

        problems = check_schema(public_api, "GET", "/api/news", 200, body)

        assert "Missing required field: data.0.title" in problems
        assert "Missing required field: pagination.page_size" in problems
        assert any(p.startswith("Field 'data.0.news_id' has invalid type") for p in problems)

    def test_response_ref(self, public_api):
        from meshcheck.contracts import check_schema

        assert check_schema(public_api, "GET", "/api/news/x", 404, {"error": "news not found"}) == []
        assert check_schema(public_api, "GET", "/api/news/x", 404, {}) == ["Missing required field: error"]

    def test_undocumented_status(self, public_api):
        from meshcheck.contracts import check_schema

        assert public_api.response_schema("GET", "/api/news", 500) is None
        assert check_schema(public_api, "GET", "/api/news", 500, {}) == [
            "No JSON response schema documented for GET /api/news 500"
        ]

    def test_openapi_30_uses_draft4(self, public_api):
        from meshcheck.contracts import DRAFT4_URI

        schema = public_api.response_schema("GET", "/api/news", 200)

        assert schema["$schema"] == DRAFT4_URI
        summary = schema["components"]["schemas"]["NewsItem"]["properties"]["summary"]
        assert summary == {"type": ["string", "null"]}


class TestContractComplianceChecker:
    """Test live checks against the mock gateway."""

    def test_public_contract(self, public_api, ready_gate, local_probe_client, mesh_server):
        """Test documented, failing and undocumented endpoints in one report."""
        from meshcheck.contracts import ContractComplianceChecker, ContractEndpoint
        from meshcheck.scenarios import Outcome, ScenarioRunner

        checker = ContractComplianceChecker(public_api, ScenarioRunner(ready_gate, local_probe_client))
        report = checker.check(mesh_server.get_url(), [
            ContractEndpoint("GET", "/api/news", paginated=True),
            ContractEndpoint("GET", "/api/events"),
            ContractEndpoint("POST", "/api/inquiries/media", body={"contact_name": "R", "email": "r@x"}),
            ContractEndpoint("GET", "/api/research", critical=False),
            ContractEndpoint("GET", "/api/services"),
        ])

        outcomes = {o.expectation.name: o for o in report.outcomes}
        assert outcomes["GET /api/news"].outcome is Outcome.PASSED
        assert outcomes["GET /api/events"].outcome is Outcome.PASSED
        assert outcomes["POST /api/inquiries/media"].outcome is Outcome.PASSED
        assert outcomes["GET /api/research"].outcome is Outcome.GAP
        assert outcomes["GET /api/services"].outcome is Outcome.FAILED
        assert outcomes["GET /api/services"].error == "GET /api/services is not defined in 'Public Website API'"
        assert report.total == 5
        assert report.compliance_percentage == 60.0
        probed = [r["path"] for r in mesh_server.requests]
        assert "/api/services" not in probed

    def test_undocumented_method(self, public_api, ready_gate, local_probe_client, mesh_server):
        """Test that a documented path with an undocumented method is reported as such."""
        from meshcheck.contracts import ContractComplianceChecker, ContractEndpoint
        from meshcheck.scenarios import Outcome, ScenarioRunner

        checker = ContractComplianceChecker(public_api, ScenarioRunner(ready_gate, local_probe_client))
        report = checker.check(mesh_server.get_url(), [ContractEndpoint("DELETE", "/api/news/n-1")])

        outcome = report.outcomes[0]
        assert outcome.outcome is Outcome.FAILED
        assert outcome.problems == ["DELETE is not documented for /api/news/n-1 in 'Public Website API'"]
        assert mesh_server.requests == []

    def test_auth_required(self, project_root, ready_gate, local_probe_client, mesh_server):
        from meshcheck.contracts import ContractComplianceChecker, ContractEndpoint, OpenAPIDocument
        from meshcheck.scenarios import ScenarioRunner

        admin = OpenAPIDocument.load(str(project_root / "contracts" / "openapi" / "admin-api.yaml"))
        checker = ContractComplianceChecker(admin, ScenarioRunner(ready_gate, local_probe_client))

        report = checker.check(mesh_server.get_url(), [
            ContractEndpoint("GET", "/admin/api/v1/inquiries", requires_auth=True),
        ])

        assert report.ok
        assert report.outcomes[0].expectation.expected_status == (401, 403)

    def test_expectation_for(self, public_api, ready_gate, local_probe_client):
        from meshcheck.contracts import ContractComplianceChecker, ContractEndpoint
        from meshcheck.scenarios import ScenarioRunner

        checker = ContractComplianceChecker(public_api, ScenarioRunner(ready_gate, local_probe_client))
        endpoint = ContractEndpoint("GET", "/api/news", paginated=True)

        exp = checker.expectation_for("http://gw", endpoint, public_api.find_operation("GET", "/api/news"))

        assert exp.expected_status == (200,)
        assert exp.required_fields == ("data", "pagination")
        assert exp.required_headers == ("X-Correlation-ID",)
        assert exp.content_type == "application/json"
        assert exp.response_schema is not None

    def test_schema_violation_fails(self, public_api, ready_gate, local_probe_client, mesh_server):
        """Test that a body violating the documented schema fails the endpoint."""
        from meshcheck.contracts import ContractComplianceChecker, ContractEndpoint
        from meshcheck.scenarios import Scenario, ScenarioRunner

        runner = ScenarioRunner(ready_gate, local_probe_client)
        checker = ContractComplianceChecker(public_api, runner)
        operation = public_api.find_operation("GET", "/api/news")

        exp = checker.expectation_for(mesh_server.get_url(), ContractEndpoint("GET", "/api/news"), operation)
        exp.path = "/api/wrong-shape"

        report = runner.run(Scenario("s", [exp]))

        assert report.ok is False
        assert any("news_id" in p for p in report.outcomes[0].problems)

    def test_non_critical_check(self, public_api, ready_gate, local_probe_client, mesh_server):
        """Test that critical=False reports violations as gaps."""
        from meshcheck.contracts import ContractComplianceChecker, ContractEndpoint
        from meshcheck.scenarios import Outcome, ScenarioRunner

        checker = ContractComplianceChecker(public_api, ScenarioRunner(ready_gate, local_probe_client))
        report = checker.check(mesh_server.get_url(), [
            ContractEndpoint("GET", "/api/services"),
            ContractEndpoint("GET", "/api/news", paginated=True),
        ], critical=False)

        assert report.ok
        assert [o.outcome for o in report.outcomes] == [Outcome.PASSED, Outcome.GAP]
