"""Tests for pre-flight field planning and mapping previews."""

import pytest

from customs_portal.core.errors import MissingRequiredValues
from customs_portal.core.models import DeclarationBundle, FieldMapping
from customs_portal.mapping.planner import FieldPlanner, create_field_planner, fill_pages

from fakes import make_declaration, make_target


class TestFieldPlanner:
    """Test cases for FieldPlanner.plan."""

    @pytest.fixture
    def planner(self):
        return create_field_planner()

    def test_header_fields_come_before_line_items(self, planner):
        plan = planner.plan(make_target(), make_declaration(lines=2))

        labels = [field.label for field in plan.for_page("td_entry").fields()]

        assert labels == [
            "TD Type",
            "Carrier",
            "Supplier Name",
            "Arrival Date",
            "CPC [line 1]",
            "Description [line 1]",
            "CPC [line 2]",
            "Description [line 2]",
        ]

    def test_header_block_precedes_lines_whatever_its_tab_order(self, planner):
        target = make_target()
        target.page("td_entry").field_mappings.append(
            FieldMapping(label="Total Lines", selectors=["#totalLines"], static_value="2", tab_order=99)
        )

        plan = planner.plan(target, make_declaration(lines=2))
        labels = [field.label for field in plan.for_page("td_entry").fields()]

        assert labels[4] == "Total Lines"
        assert labels[5:] == ["CPC [line 1]", "Description [line 1]", "CPC [line 2]", "Description [line 2]"]

    def test_repeatable_fields_expand_per_line(self, planner):
        plan = planner.plan(make_target(), make_declaration(lines=3))
        page_plan = plan.for_page("td_entry")

        cpc = [field for field in page_plan.fields() if field.mapping.label == "CPC"]

        assert [field.value for field in cpc] == ["4000001", "4000002", "4000003"]
        assert [field.candidates for field in cpc] == [
            ['[name="rec1_CPC"]'],
            ['[name="rec2_CPC"]'],
            ['[name="rec3_CPC"]'],
        ]

    def test_values_are_resolved_and_transformed(self, planner):
        plan = planner.plan(make_target(), make_declaration(lines=1))
        values = {field.label: field.value for field in plan.for_page("td_entry").fields()}

        assert values["TD Type"] == "C400"
        assert values["Carrier"] == "FED"
        assert values["Arrival Date"] == "15/03/2024"
        assert values["Description [line 1]"] == "Item number 1 with a"

    def test_truncation_is_reported_as_warning(self, planner):
        plan = planner.plan(make_target(), make_declaration(lines=2))

        assert len([w for w in plan.warnings if "truncated" in w]) == 2

    def test_only_fill_pages_are_planned(self, planner):
        plan = planner.plan(make_target(), make_declaration())

        assert list(plan.pages) == ["td_entry"]

    def test_all_missing_required_fields_are_collected(self, planner):
        declaration = DeclarationBundle(
            declaration_id="DEC-002",
            data={"shipment": {"carrier": "DHL"}},
            line_items=[{"cpc": "4000.00"}, {"description": "No code"}],
        )

        with pytest.raises(MissingRequiredValues) as exc_info:
            planner.plan(make_target(), declaration)

        missing = exc_info.value.missing
        assert [(error.field_label, error.line_number) for error in missing] == [
            ("Supplier Name", None),
            ("CPC", 2),
        ]
        assert exc_info.value.code == "missing_required_value"

    def test_declaration_without_lines_plans_header_only(self, planner):
        plan = planner.plan(make_target(), make_declaration(lines=0))

        assert plan.for_page("td_entry").lines == {}
        assert len(plan.for_page("td_entry").header) == 4


class TestFillPages:
    """Test cases for fill page selection."""

    def test_fill_steps_name_the_pages(self):
        assert [page.name for page in fill_pages(make_target())] == ["td_entry"]

    def test_form_pages_used_without_fill_steps(self):
        assert [page.name for page in fill_pages(make_target(workflow_steps=[]))] == ["td_entry"]


class TestMappingPreview:
    """Test cases for FieldPlanner.preview."""

    planner = FieldPlanner()

    def test_ready_declaration(self):
        preview = self.planner.preview(make_target(), make_declaration(lines=2))

        assert preview.ready_to_submit
        assert preview.unmapped_required == []
        assert preview.total_fields == 8
        assert preview.filled_fields == 8
        assert [page.page_name for page in preview.pages] == ["td_list", "td_entry"]

    def test_preview_rows_describe_sources(self):
        preview = self.planner.preview(make_target(), make_declaration(lines=1))
        rows = {row.label: row for row in preview.pages[1].fields}

        assert rows["TD Type"].source == "Static: C400"
        assert rows["Carrier"].matched_by == "alias"
        assert rows["Supplier Name"].source == "shipper.name"
        assert rows["CPC"].line_number == 1

    def test_missing_data_is_listed_not_raised(self):
        declaration = make_declaration(lines=1, shipper={})

        preview = self.planner.preview(make_target(), declaration)

        assert not preview.ready_to_submit
        assert preview.unmapped_required == [
            {"page": "td_entry", "field": "Supplier Name", "local_field": "shipper.name", "line_number": None}
        ]
        assert preview.filled_fields == preview.total_fields - 1

    def test_login_pages_are_not_previewed(self):
        preview = self.planner.preview(make_target(), make_declaration())

        assert "login" not in [page.page_name for page in preview.pages]
        assert preview.pages[1].url == "https://caps.example.gov/TDDataEntry"
