"""Blend sheet projection, CSV round trip and PDF rendering."""

import io

import pytest
from PyPDF2 import PdfReader

from gelatin_erp.schemas.blend import BlendCreate
from gelatin_erp.services import blend_selector
from gelatin_erp.services.blend_sheet import (
    CSV_HEADERS,
    build_blend_sheet,
    export_blend_sheet_csv,
    parse_blend_sheet_csv,
    render_blend_sheet_pdf,
)

FISCAL_YEAR = "2025-26"


@pytest.fixture
def make_blend(make_batch, db_session):
    """Blend over ``count`` batches; every third one is outsourced."""

    async def _make(count: int, **overrides):
        batches = []
        for i in range(count):
            batch_type = "outsource" if i % 3 == 2 else "production"
            batches.append(await make_batch(180 + (i % 5) * 10, batch_type=batch_type))
        body = {
            "target_bloom_min": 180,
            "target_bloom_max": 220,
            "fiscal_year": FISCAL_YEAR,
            "selections": [{"batch_id": b.id, "bags": 10} for b in batches],
        }
        body.update(overrides)
        return await blend_selector.create_blend(db_session, BlendCreate(**body))

    return _make


@pytest.mark.integration
@pytest.mark.asyncio
class TestBlendSheetProjection:

    async def test_sheet_layout(self, make_blend):
        blend = await make_blend(
            3,
            target_mesh=20,
            additional_targets={"viscosity": 3.5, "color": "Light Yellow"},
            notes="Customer order 118",
        )
        sheet = build_blend_sheet(blend)

        assert sheet.lot_number == blend.lot_number
        assert sheet.serial_number == 1
        assert sheet.bloom_range == "180-220"
        assert sheet.mesh == "20"
        assert [r.sequence for r in sheet.rows] == [1, 2, 3]
        assert [r.label for r in sheet.rows] == ["1", "2", "1 (O)"]
        assert sheet.total_bags == 30
        assert sheet.total_bloom == 180 + 190 + 200

        summary = dict(sheet.summary)
        assert summary["Average Bloom"] == "190"
        assert summary["Weight (Kg)"] == "750"
        assert summary["Target Viscosity"] == "3.5"
        assert summary["Target Color"] == "Light Yellow"
        assert "Average Viscosity" not in summary
        assert sheet.notes == "Customer order 118"

    async def test_sheet_without_mesh(self, make_blend):
        sheet = build_blend_sheet(await make_blend(1))
        assert sheet.mesh is None


@pytest.mark.integration
@pytest.mark.asyncio
class TestBlendSheetCsv:

    @pytest.mark.parametrize("count", [1, 5, 50])
    async def test_round_trip(self, make_blend, count):
        blend = await make_blend(count)
        text = export_blend_sheet_csv(blend)

        lines = text.strip().split("\n")
        assert lines[0] == ",".join(CSV_HEADERS)
        assert len(lines) == count + 1
        assert parse_blend_sheet_csv(text) == build_blend_sheet(blend).rows


@pytest.mark.integration
@pytest.mark.asyncio
class TestBlendSheetPdf:

    async def test_renders_pdf(self, make_blend):
        pdf = render_blend_sheet_pdf(await make_blend(3, target_mesh=20))
        assert pdf.startswith(b"%PDF")

        reader = PdfReader(io.BytesIO(pdf))
        assert len(reader.pages) == 1
        text = reader.pages[0].extract_text()
        assert "BLENDING SHEET" in text
        assert "TOTAL" in text

    async def test_deterministic(self, make_blend):
        blend = await make_blend(5)
        assert render_blend_sheet_pdf(blend) == render_blend_sheet_pdf(blend)

    async def test_long_blend_spans_pages(self, make_blend):
        pdf = render_blend_sheet_pdf(await make_blend(50))
        assert len(PdfReader(io.BytesIO(pdf)).pages) > 1
