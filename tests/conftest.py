"""Pytest configuration and fixtures for sinapicalc tests.

Provides an in-memory database per test and builders for the SINAPI
reference workbook and archive.
"""

from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest
import pytest_asyncio
from openpyxl import Workbook
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from sinapicalc.config import reset_config
from sinapicalc.db.connection import create_engine_for_url
from sinapicalc.db.models import Base
from sinapicalc.parsing.layouts import REGIONS

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True)
def _test_environment(monkeypatch):
    """Every test sees the same minimal environment."""
    monkeypatch.setenv("DATABASE_URL", TEST_DATABASE_URL)
    monkeypatch.setenv("DEFAULT_OPERATOR", "tester")
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture()
async def db_session() -> AsyncSession:
    """Create in-memory database for testing."""
    engine = create_engine_for_url(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


def price_cells(prices: dict[str, float]) -> list:
    """27 region cells in sheet order; regions not given are "-"."""
    return [prices.get(region, "-") for region in REGIONS]


def build_reference_workbook(
    path: Path,
    resources: list[tuple] | None = None,
    exempt_prices: list[tuple] | None = None,
    breakdown: list[tuple] | None = None,
) -> Path:
    """Write a minimal SINAPI reference workbook.

    Args:
        resources: (classification, code, description, unit, {region: price})
        exempt_prices: (code, {region: price})
        breakdown: (composition_code, item_type, item_code, description, unit, coefficient)
    """
    wb = Workbook()
    wb.remove(wb.active)

    isd = wb.create_sheet("ISD")
    isd.append(["SINAPI - Relatório de Insumos"])
    isd.append([])
    isd.append(["Classificação", "Código do Insumo", "Descrição", "Unidade", "Origem"] + list(REGIONS))
    for classification, code, description, unit, prices in resources or []:
        isd.append([classification, code, description, unit, "C"] + price_cells(prices))

    icd = wb.create_sheet("ICD")
    icd.append(["SINAPI - Insumos desonerados"])
    icd.append(["Classificação", "Código do Insumo", "Descrição", "Unidade", "Origem"] + list(REGIONS))
    for code, prices in exempt_prices or []:
        icd.append(["", code, "", "", "C"] + price_cells(prices))

    analytic = wb.create_sheet("Analítico")
    analytic.append(["SINAPI - Composições analíticas"])
    analytic.append(["Grupo", "Código da Composição", "Tipo Item", "Código do Item", "Descrição", "Unidade", "Coeficiente"])
    for row in breakdown or []:
        analytic.append([""] + list(row))

    wb.save(path)
    return path


def build_archive(workbook_path: Path, extra_files: dict[str, bytes] | None = None) -> bytes:
    """Zip a reference workbook the way the monthly archive ships it."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.write(workbook_path, arcname=workbook_path.name)
        for name, content in (extra_files or {}).items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def sample_workbook(tmp_path: Path) -> Path:
    """Two resources, one composition using both, one parent using it."""
    return build_reference_workbook(
        tmp_path / "SINAPI_Referencia_2024_01.xlsx",
        resources=[
            ("MATERIAL", 1001, "Cimento Portland CP II", "KG", {"SP": "0,80", "RJ": 0.85}),
            ("MAO DE OBRA", "2002", "Pedreiro", "H", {"SP": "25,00"}),
        ],
        exempt_prices=[
            (1001, {"SP": "0,70"}),
            ("2002", {"SP": "20,00"}),
        ],
        breakdown=[
            ("87000", "", "", "Argamassa traço 1:3", "M3", None),
            ("87000", "INSUMO", "1001", "Cimento Portland CP II", "KG", "10,0"),
            ("87000", "INSUMO", "2002", "Pedreiro", "H", "0,5"),
            ("87100", "", "", "Alvenaria de vedação", "M2", None),
            ("87100", "COMPOSICAO", "87000", "Argamassa traço 1:3", "M3", "3"),
        ],
    )


@pytest.fixture
def workbook_factory(tmp_path: Path):
    """build_reference_workbook bound to a file name under tmp_path."""

    def _build(name: str = "SINAPI_Referencia_2024_01.xlsx", **sheets) -> Path:
        return build_reference_workbook(tmp_path / name, **sheets)

    return _build


@pytest.fixture
def archive_factory():
    return build_archive
