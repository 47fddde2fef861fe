"""Pre-flight field planning: expands repeatable fields and resolves every value before the browser starts."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from customs_portal.core.errors import InvalidFieldValue, MissingRequiredValue, MissingRequiredValues
from customs_portal.core.models import (
    DeclarationBundle,
    FieldKind,
    FieldMapping,
    Page,
    PageType,
    Target,
    WorkflowAction,
)
from customs_portal.mapping.resolver import FieldValueResolver, ResolvedValue
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PlannedField:
    """One concrete field instance to fill: a mapping, optionally bound to a line item."""
    mapping: FieldMapping
    page: str
    resolved: ResolvedValue
    line_number: Optional[int] = None

    @property
    def label(self) -> str:
        if self.line_number is None:
            return self.mapping.label
        return f"{self.mapping.label} [line {self.line_number}]"

    @property
    def kind(self) -> FieldKind:
        return self.mapping.kind

    @property
    def value(self) -> Any:
        return self.resolved.value

    @property
    def candidates(self) -> List[str]:
        return self.mapping.selector_candidates(self.line_number)

    @property
    def is_required(self) -> bool:
        return self.mapping.is_required


@dataclass
class PagePlan:
    """Ordered field instances of one page: header fields first, then each line item."""
    page: Page
    header: List[PlannedField] = field(default_factory=list)
    lines: Dict[int, List[PlannedField]] = field(default_factory=dict)

    def fields(self) -> List[PlannedField]:
        ordered = list(self.header)
        for line_number in sorted(self.lines):
            ordered.extend(self.lines[line_number])
        return ordered


@dataclass
class FieldPlan:
    """Fully resolved values for every page a submission fills."""
    target_code: str
    declaration_id: str
    pages: Dict[str, PagePlan] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def for_page(self, name: str) -> Optional[PagePlan]:
        return self.pages.get(name)


class FieldPreview(BaseModel):
    """Preview row for one field instance."""
    label: str = Field(..., description="Field label")
    kind: FieldKind = Field(..., description="Field kind")
    section: Optional[str] = Field(None, description="Section label")
    line_number: Optional[int] = Field(None, description="Line item index for repeatable fields")
    source: str = Field(..., description="Where the value comes from")
    value: Optional[Any] = Field(None, description="Resolved value")
    required: bool = Field(False, description="Whether the field is required")
    has_value: bool = Field(False, description="Whether a value resolved")
    matched_by: Optional[str] = Field(None, description="How a select option was matched")
    error: Optional[str] = Field(None, description="Resolution error, if any")


class PagePreview(BaseModel):
    """Preview of one page."""
    page_name: str = Field(..., description="Page name")
    page_type: str = Field(..., description="Page type")
    url: str = Field(..., description="Resolved page URL")
    fields: List[FieldPreview] = Field(default_factory=list, description="Field rows")


class MappingPreview(BaseModel):
    """What a submission would type into the portal, without opening a browser."""
    target_code: str = Field(..., description="Target code")
    target_name: str = Field(..., description="Target display name")
    target_url: str = Field(..., description="Target base URL")
    declaration_id: str = Field(..., description="Declaration identifier")
    pages: List[PagePreview] = Field(default_factory=list, description="Per-page previews")
    total_fields: int = Field(0, description="Number of field instances")
    filled_fields: int = Field(0, description="Field instances with a value")
    unmapped_required: List[Dict[str, Any]] = Field(default_factory=list, description="Required fields without value")
    warnings: List[str] = Field(default_factory=list, description="Non-fatal warnings")
    ready_to_submit: bool = Field(False, description="True when no required field is missing")


def fill_pages(target: Target) -> List[Page]:
    """Pages visited by ``fill`` steps, in workflow order; all form pages when there are none."""
    named = []
    for step in target.workflow_steps:
        if step.action == WorkflowAction.FILL:
            page = target.page(step.page)
            if page is not None and page.is_active and page not in named:
                named.append(page)
    return named or target.form_pages()


class FieldPlanner:
    """
    Builds the field plan for a target and declaration.

    Every value a submission will type is resolved here, so that a declaration
    missing required data is rejected before any browser action happens.
    """

    def __init__(self, resolver: Optional[FieldValueResolver] = None):
        self.resolver = resolver or FieldValueResolver()
        self.logger = logger.bind(component="field_planner")

    def plan(self, target: Target, declaration: DeclarationBundle) -> FieldPlan:
        """
        Resolve every fill-page field instance.

        Raises:
            MissingRequiredValues: one or more required fields have no value.
            InvalidFieldValue: a value could not be transformed.
        """
        plan = FieldPlan(target_code=target.code, declaration_id=declaration.declaration_id)
        missing: List[MissingRequiredValue] = []
        invalid: List[InvalidFieldValue] = []

        for page in fill_pages(target):
            page_plan = PagePlan(page=page)
            for mapping, line_number, context in self._instances(page, declaration):
                try:
                    resolved = self.resolver.resolve(mapping, context, page=page.name, line_number=line_number)
                except MissingRequiredValue as e:
                    missing.append(e)
                    continue
                except InvalidFieldValue as e:
                    invalid.append(e)
                    continue

                if resolved.warning is not None:
                    plan.warnings.append(resolved.warning.message)
                if resolved.truncated:
                    plan.warnings.append(
                        f"Value of '{mapping.label}' truncated to {mapping.max_length} characters"
                    )
                planned = PlannedField(mapping=mapping, page=page.name, resolved=resolved, line_number=line_number)
                if line_number is None:
                    page_plan.header.append(planned)
                else:
                    page_plan.lines.setdefault(line_number, []).append(planned)
            plan.pages[page.name] = page_plan

        if missing:
            self.logger.warning(
                "Pre-flight rejected declaration",
                target=target.code,
                declaration_id=declaration.declaration_id,
                missing=[error.field_label for error in missing],
            )
            raise MissingRequiredValues(missing)
        if invalid:
            raise invalid[0]

        self.logger.info(
            "Field plan built",
            target=target.code,
            pages=len(plan.pages),
            fields=sum(len(p.fields()) for p in plan.pages.values()),
            warnings=len(plan.warnings),
        )
        return plan

    def preview(self, target: Target, declaration: DeclarationBundle) -> MappingPreview:
        """Describe every field instance of every active page without raising on missing data."""
        runtime = {"declaration_id": declaration.declaration_id}
        preview = MappingPreview(
            target_code=target.code,
            target_name=target.name,
            target_url=target.base_url,
            declaration_id=declaration.declaration_id,
        )

        # login fields resolve from credentials, never from declaration data
        pages = [p for p in target.pages if p.is_active and p.page_type != PageType.LOGIN]
        for page in sorted(pages, key=lambda p: p.sequence_order):
            page_preview = PagePreview(
                page_name=page.name,
                page_type=page.page_type.value,
                url=page.full_url(target.base_url, runtime),
            )
            for mapping, line_number, context in self._instances(page, declaration):
                row = FieldPreview(
                    label=mapping.label,
                    kind=mapping.kind,
                    section=mapping.section,
                    line_number=line_number,
                    source=mapping.source_description,
                    required=mapping.is_required,
                )
                try:
                    resolved = self.resolver.resolve(mapping, context, page=page.name, line_number=line_number)
                except MissingRequiredValue as e:
                    row.error = e.message
                    preview.unmapped_required.append(
                        {
                            "page": page.name,
                            "field": mapping.label,
                            "local_field": mapping.local_field,
                            "line_number": line_number,
                        }
                    )
                except InvalidFieldValue as e:
                    row.error = e.message
                else:
                    row.value = resolved.value
                    row.has_value = not resolved.is_empty
                    row.matched_by = resolved.match.matched_by if resolved.match else None
                    if resolved.warning is not None:
                        preview.warnings.append(resolved.warning.message)

                preview.total_fields += 1
                if row.has_value:
                    preview.filled_fields += 1
                page_preview.fields.append(row)
            preview.pages.append(page_preview)

        preview.ready_to_submit = not preview.unmapped_required
        return preview

    def _instances(self, page: Page, declaration: DeclarationBundle):
        """
        Yield ``(mapping, line_number, context)`` in fill order.

        Header fields form one block in tab order, followed by one block per
        line item. A header field with a high tab order (a totals field) still
        precedes the lines, because the add-line button is clicked between
        line blocks.
        """
        mappings = page.active_mappings()
        header_context = declaration.context()
        for mapping in mappings:
            if not mapping.is_repeatable:
                yield mapping, None, header_context

        repeatable = [mapping for mapping in mappings if mapping.is_repeatable]
        if not repeatable:
            return
        for line_number in range(1, len(declaration.line_items) + 1):
            context = declaration.line_context(line_number)
            for mapping in repeatable:
                yield mapping, line_number, context


def create_field_planner(resolver: Optional[FieldValueResolver] = None) -> FieldPlanner:
    """Factory function to create a field planner."""
    return FieldPlanner(resolver=resolver)
