"""
Pytest configuration and shared fixtures.
"""

import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from underwriting.main import app
from underwriting.db.database import get_db
# Import all models to ensure all tables are created
from underwriting.db.models import (
    Base, UnderwritingModel, WaterfallStructureRecord, ScenarioRecord,
    WaterfallDistributionRecord,
)
from underwriting.calculations.assumptions import OperatingExpenses, UnderwritingAssumptions
from underwriting.calculations.waterfall import WaterfallStructure


# Create a shared test database engine
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def override_get_db():
    """Override database dependency for testing."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


# Override the dependency globally for all tests
app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and drop after."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db_session():
    """Create database session for test setup."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


# T12-style multifamily deal: $820K GPR, $8.5M loan at 6.25%
DEAL_INPUTS = {
    "gross_potential_rent": 820000,
    "vacancy_rate": 0.05,
    "other_income": 0,
    "operating_expenses": 270000,
    "purchase_price": 11500000,
    "loan_amount": 8500000,
    "interest_rate": 0.0625,
    "amortization_years": 30,
    "hold_period_years": 5,
    "exit_cap_rate": 0.055,
    "rent_growth_rate": 0.03,
    "expense_growth_rate": 0.02,
}


@pytest.fixture
def deal_inputs():
    """JSON-ready assumption inputs for API tests."""
    return dict(DEAL_INPUTS)


@pytest.fixture
def deal_assumptions():
    """Leveraged base case from DEAL_INPUTS."""
    return UnderwritingAssumptions.from_dict(DEAL_INPUTS)


@pytest.fixture
def stabilized_assumptions():
    """Moderately levered deal with positive cash flow every year."""
    return UnderwritingAssumptions(
        gross_potential_rent=1200000,
        vacancy_rate=0.05,
        other_income=30000,
        operating_expenses=OperatingExpenses.from_total(420000),
        purchase_price=10000000,
        loan_amount=6000000,
        interest_rate=0.055,
        amortization_years=30,
        hold_period_years=5,
        exit_cap_rate=0.065,
    )


@pytest.fixture
def value_add_structure():
    """$9M LP / $1M GP structure with the default promote tiers."""
    return WaterfallStructure(lp_equity=9000000, gp_equity=1000000)
