import pytest
from dotenv import load_dotenv

from fakes import FakeWallet, sale_config_data, word
from mcp_evm_presale.sale_manager import parse_sale_config


@pytest.fixture(scope="session", autouse=True)
def load_test_env():
    # Load environment variables from .env file
    load_dotenv()


@pytest.fixture
def sale_config():
    return parse_sale_config(sale_config_data())


@pytest.fixture
def wallet():
    wallet = FakeWallet()
    wallet.set_call("allowance(address,address)", word(0))
    wallet.set_call("canFinalizeNow()", word(1))
    return wallet
