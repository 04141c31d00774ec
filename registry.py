"""
Token registry.

An ownable ledger of customizable tokens. Each token records its holder, a
mutable trait string and an immutable metadata URI. Only the administrative
identity may mint or change traits; reads are public.

Every mutation runs under a process-wide lock inside a single database
transaction, so callers never observe a partially applied mint or update.
"""

import logging
import threading

from sqlalchemy import func
from web3 import Web3

from exceptions import AuthorizationError, InvalidIdentityError, TokenNotFoundError
from models import RegistryState, Token, db

logger = logging.getLogger(__name__)

ZERO_ADDRESS = '0x' + '0' * 40

_registry_lock = threading.Lock()


def normalize_address(address):
    """Return the checksummed form of ``address`` or raise InvalidIdentityError."""
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidIdentityError(address)
    return Web3.to_checksum_address(address)


class TokenRegistry:
    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    def initialize(self, admin):
        """
        Create the registry state row with ``admin`` as the administrative
        identity. An existing registry keeps the admin it was created with.
        """
        admin = normalize_address(admin)
        with _registry_lock:
            state = self.session.get(RegistryState, 1)
            if state is None:
                state = RegistryState(id=1, next_id=0, admin=admin)
                self.session.add(state)
                self.session.commit()
                logger.info(f"Registry initialized with admin {admin}")
            elif state.admin != admin:
                logger.warning(
                    f"Configured admin {admin} differs from registry admin {state.admin}; keeping {state.admin}"
                )
            return state.admin

    def _state(self):
        state = self.session.get(RegistryState, 1)
        if state is None:
            raise RuntimeError('Token registry has not been initialized')
        return state

    @property
    def admin(self):
        return self._state().admin

    def _require_admin(self, caller, action):
        admin = self._state().admin
        if not isinstance(caller, str) or not Web3.is_address(caller) \
                or Web3.to_checksum_address(caller) != admin:
            logger.warning(f"Rejected {action} from {caller}")
            raise AuthorizationError(caller, action)

    def _get_token(self, token_id):
        if isinstance(token_id, bool) or not isinstance(token_id, int) or token_id < 0:
            raise TokenNotFoundError(token_id)
        # Ids are dense, so anything at or past the counter was never minted
        if token_id >= self._state().next_id:
            raise TokenNotFoundError(token_id)
        token = self.session.get(Token, token_id)
        if token is None:
            raise TokenNotFoundError(token_id)
        return token

    def mint(self, caller, recipient, initial_traits, metadata_uri):
        """Mint a token to ``recipient`` and return its id."""
        with _registry_lock:
            try:
                self._require_admin(caller, 'mint')
                recipient = normalize_address(recipient)
                if recipient == ZERO_ADDRESS:
                    raise InvalidIdentityError(recipient)

                state = self._state()
                token_id = state.next_id
                self.session.add(Token(
                    id=token_id,
                    owner=recipient,
                    traits=initial_traits,
                    metadata_uri=metadata_uri,
                ))
                state.next_id = token_id + 1
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        logger.info(f"Minted token {token_id} to {recipient} ({metadata_uri})")
        return token_id

    def update_traits(self, caller, token_id, new_traits):
        """Replace the trait string of an existing token."""
        with _registry_lock:
            try:
                self._require_admin(caller, 'update traits')
                token = self._get_token(token_id)
                token.traits = new_traits
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        logger.info(f"Updated traits of token {token_id}: {new_traits}")

    def get_metadata_uri(self, token_id):
        return self._get_token(token_id).metadata_uri

    def get_traits(self, token_id):
        return self._get_token(token_id).traits

    def owner_of(self, token_id):
        return self._get_token(token_id).owner

    def get_token(self, token_id):
        return self._get_token(token_id).to_dict()

    def balance_of(self, owner):
        owner = normalize_address(owner)
        return self.session.query(func.count(Token.id)).filter(Token.owner == owner).scalar()

    def total_supply(self):
        return self._state().next_id
