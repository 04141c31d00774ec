"""
Shared fixtures: an app bound to an in-memory database and wallet identities.
"""

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from app import create_app
from registry import TokenRegistry

ADMIN_KEY = '0x' + '11' * 32
USER_KEY = '0x' + '22' * 32


@pytest.fixture
def admin_account():
    return Account.from_key(ADMIN_KEY)


@pytest.fixture
def user_account():
    return Account.from_key(USER_KEY)


@pytest.fixture
def app_config(admin_account):
    return {
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'ADMIN_ADDRESS': admin_account.address,
        'ADMIN_PRIVATE_KEY': ADMIN_KEY,
        'CONTRACT_ADDRESS': None,
    }


@pytest.fixture
def app(app_config):
    return create_app(app_config)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def registry(app):
    with app.app_context():
        yield TokenRegistry()


def login(client, account):
    """Run the signed-challenge login for ``account`` on ``client``."""
    challenge = client.get(f'/auth/nonce?address={account.address}').get_json()
    signed = Account.sign_message(encode_defunct(text=challenge['message']), private_key=account.key)
    return client.post('/auth/login', json={
        'address': account.address,
        'signature': Web3.to_hex(signed.signature),
    })
