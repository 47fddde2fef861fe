"""Tests for target configuration and submission record models."""

import pytest
from pydantic import ValidationError

from customs_portal.core.models import (
    CredentialBundle,
    DeclarationBundle,
    DropdownValue,
    FieldMapping,
    Page,
    SubmissionRecord,
    SubmissionStatus,
    Target,
    TransformType,
    ValueTransform,
    WorkflowStep,
    fill_placeholders,
)

from fakes import make_target


class TestFieldMapping:
    """Test cases for FieldMapping validation and selector candidates."""

    def test_name_and_id_fallbacks_are_appended(self):
        mapping = FieldMapping(label="Importer", selectors=["#importer"], field_name="importerId", field_id="imp")

        assert mapping.selector_candidates() == ["#importer", '[name="importerId"]', "#imp"]

    def test_duplicate_candidates_are_removed(self):
        mapping = FieldMapping(label="Importer", selectors=["#imp"], field_id="imp")

        assert mapping.selector_candidates() == ["#imp"]

    def test_line_placeholder_is_substituted(self):
        mapping = FieldMapping(label="CPC", field_name="rec{N}_CPC", is_repeatable=True)

        assert mapping.selector_candidates(2) == ['[name="rec2_CPC"]']

    def test_mapping_without_selectors_is_rejected(self):
        with pytest.raises(ValidationError):
            FieldMapping(label="Nothing")

    def test_repeatable_mapping_requires_placeholder(self):
        with pytest.raises(ValidationError):
            FieldMapping(label="CPC", selectors=['[name="rec1_CPC"]'], is_repeatable=True)

    def test_single_default_option(self):
        with pytest.raises(ValidationError):
            FieldMapping(
                label="Carrier",
                selectors=["#carrier"],
                kind="select",
                dropdown_values=[
                    DropdownValue(option_value="A", is_default=True),
                    DropdownValue(option_value="B", is_default=True),
                ],
            )

    def test_option_values_unique(self):
        with pytest.raises(ValidationError):
            FieldMapping(
                label="Carrier",
                selectors=["#carrier"],
                dropdown_values=[DropdownValue(option_value="A"), DropdownValue(option_value="A")],
            )

    def test_source_description(self):
        assert FieldMapping(label="A", selectors=["#a"], static_value="X").source_description == "Static: X"
        assert FieldMapping(label="A", selectors=["#a"], local_field="shipper.name").source_description == "shipper.name"
        assert FieldMapping(label="A", selectors=["#a"]).source_description == "Manual Entry"


class TestValueTransform:
    """Test cases for transform descriptors."""

    def test_descriptor_string_with_argument(self):
        transform = ValueTransform.model_validate("date_format:%d/%m/%Y")

        assert transform.type == TransformType.DATE_FORMAT
        assert transform.format == "%d/%m/%Y"

    def test_plain_descriptor(self):
        assert ValueTransform.model_validate("remove_dots").type == TransformType.REMOVE_DOTS

    def test_unknown_transform_rejected_at_load(self):
        with pytest.raises(ValidationError):
            FieldMapping(label="A", selectors=["#a"], transform="rot13")


class TestTarget:
    """Test cases for Target integrity rules."""

    def test_page_names_unique(self):
        with pytest.raises(ValidationError):
            Target(
                code="X",
                name="X",
                base_url="https://x.example",
                pages=[Page(name="p", sequence_order=1), Page(name="p", sequence_order=2)],
            )

    def test_sequence_orders_unique(self):
        with pytest.raises(ValidationError):
            Target(
                code="X",
                name="X",
                base_url="https://x.example",
                pages=[Page(name="a", sequence_order=1), Page(name="b", sequence_order=1)],
            )

    def test_steps_reference_own_pages(self):
        with pytest.raises(ValidationError):
            Target(
                code="X",
                name="X",
                base_url="https://x.example",
                pages=[Page(name="a", sequence_order=1)],
                workflow_steps=[WorkflowStep(action="fill", page="missing")],
            )

    def test_duplicate_field_labels_rejected(self):
        with pytest.raises(ValidationError):
            Page(
                name="a",
                field_mappings=[
                    FieldMapping(label="Same", selectors=["#a"]),
                    FieldMapping(label="Same", selectors=["#b"]),
                ],
            )

    def test_helpers(self):
        target = make_target()

        assert target.full_login_url == "https://caps.example.gov/login"
        assert target.login_page().name == "login"
        assert [page.name for page in target.form_pages()] == ["td_entry"]
        assert not target.is_mapped()
        target.mark_mapped()
        target.mark_tested()
        assert target.is_mapped()
        assert target.last_tested_at is not None

    def test_page_url_templating(self):
        page = Page(name="entry", url_pattern="/TDDataEntry?id={record_id}&ref={unknown}")

        url = page.full_url("https://caps.example.gov/", {"record_id": "42"})

        assert url == "https://caps.example.gov/TDDataEntry?id=42&ref={unknown}"

    def test_credentials_hidden_in_repr(self):
        credentials = CredentialBundle(username="broker", password="s3cret")

        assert "s3cret" not in repr(credentials)
        assert credentials.as_bundle()["password"] == "s3cret"


def test_fill_placeholders_leaves_unknown():
    assert fill_placeholders("/{a}/{b}", {"a": 1}) == "/1/{b}"


def test_declaration_line_context():
    bundle = DeclarationBundle(declaration_id="D1", data={"shipper": {"name": "Acme"}}, line_items=[{"cpc": "1"}, {"cpc": "2"}])

    context = bundle.line_context(2)

    assert context["item"] == {"cpc": "2"}
    assert context["line"] == 2
    assert context["shipper"]["name"] == "Acme"


def test_record_retry_rules():
    record = SubmissionRecord(target_code="CAPS", declaration_id="D1")
    assert not record.is_final
    assert not record.can_retry(3)

    record.status = SubmissionStatus.FAILED
    assert record.can_retry(3)
    record.retry_count = 3
    assert not record.can_retry(3)
