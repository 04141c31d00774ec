import logging
import uuid
from datetime import datetime, timedelta, timezone

from web3 import Web3

logger = logging.getLogger(__name__)

CustomizableNFTABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "string", "name": "traits", "type": "string"},
            {"internalType": "string", "name": "tokenURI", "type": "string"}
        ],
        "name": "mint",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "tokenId", "type": "uint256"},
            {"internalType": "string", "name": "newTraits", "type": "string"}
        ],
        "name": "updateTraits",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "tokenURI",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "getTraits",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function"
    }
]


FINISHED_STATUSES = ('confirmed', 'failed')


def _now():
    return datetime.now(timezone.utc)


class TransactionTracker:
    """
    Submits registry calls to a deployed contract and tracks their status.

    Records are kept in memory under an internal id. Confirmed and failed
    records are dropped once they are older than ``record_ttl``.
    """

    def __init__(self, web3, contract_address, chain_id=43113, record_ttl=timedelta(hours=1)):
        self.transactions = {}
        self.web3 = web3
        self.chain_id = chain_id
        self.record_ttl = record_ttl
        self.contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=CustomizableNFTABI
        )

    def prune(self, now=None):
        """Drop finished records past the TTL and return how many were dropped."""
        cutoff = (now or _now()) - self.record_ttl
        expired = [
            tx_id for tx_id, record in self.transactions.items()
            if record['status'] in FINISHED_STATUSES and record.get('finished_at', record['created_at']) < cutoff
        ]
        for tx_id in expired:
            del self.transactions[tx_id]
        return len(expired)

    def _record(self, tx_type, **details):
        self.prune()
        tx_id = str(uuid.uuid4())
        self.transactions[tx_id] = {
            'type': tx_type,
            'status': 'pending',
            'created_at': _now(),
            'error': None,
            **details
        }
        return tx_id

    def _finish(self, tx_id, status, error=None, **details):
        record = self.transactions[tx_id]
        record.update(status=status, finished_at=_now(), **details)
        if error is not None:
            record['error'] = error

    def _send(self, tx_id, contract_call, admin_private_key):
        try:
            admin_account = self.web3.eth.account.from_key(admin_private_key)
            nonce = self.web3.eth.get_transaction_count(admin_account.address, 'pending')

            tx = contract_call.build_transaction({
                'from': admin_account.address,
                'chainId': self.chain_id,
                'gas': 300000,
                'maxFeePerGas': self.web3.to_wei('50', 'gwei'),
                'maxPriorityFeePerGas': self.web3.to_wei('2', 'gwei'),
                'nonce': nonce,
                'type': 2  # EIP-1559
            })

            signed_tx = self.web3.eth.account.sign_transaction(tx, admin_account.key)
            tx_hash = self.web3.eth.send_raw_transaction(signed_tx.raw_transaction)
            tx_hash_hex = tx_hash.hex()

            self.transactions[tx_id]['tx_hash'] = tx_hash_hex
            self.transactions[tx_id]['status'] = 'submitted'
            logger.info(f"{self.transactions[tx_id]['type']} transaction submitted: {tx_hash_hex}")

            return {
                'success': True,
                'tx_hash': tx_hash_hex,
                'tx_id': tx_id,
                'message': f'Transaction submitted: {tx_hash_hex}'
            }

        except Exception as e:
            logger.error(f"Transaction {tx_id} failed: {str(e)}")
            self._finish(tx_id, 'failed', error=str(e))
            return {'success': False, 'error': str(e), 'tx_id': tx_id}

    def submit_mint(self, recipient, traits, metadata_uri, admin_private_key):
        tx_id = self._record('mint', recipient=recipient, traits=traits, metadata_uri=metadata_uri)
        try:
            recipient = Web3.to_checksum_address(recipient)
        except ValueError as e:
            self._finish(tx_id, 'failed', error=str(e))
            return {'success': False, 'error': str(e), 'tx_id': tx_id}

        call = self.contract.functions.mint(recipient, traits, metadata_uri)
        return self._send(tx_id, call, admin_private_key)

    def submit_update_traits(self, token_id, traits, admin_private_key):
        tx_id = self._record('update_traits', token_id=token_id, traits=traits)
        call = self.contract.functions.updateTraits(token_id, traits)
        return self._send(tx_id, call, admin_private_key)

    def get_metadata_uri(self, token_id):
        return self.contract.functions.tokenURI(token_id).call()

    def get_traits(self, token_id):
        return self.contract.functions.getTraits(token_id).call()

    def _refresh(self, tx_id):
        """Poll the receipt of a submitted transaction; returns a receipt lookup error, if any."""
        record = self.transactions[tx_id]
        if record['status'] != 'submitted' or 'tx_hash' not in record:
            return None
        try:
            receipt = self.web3.eth.get_transaction_receipt(record['tx_hash'])
        except Exception as e:
            # Not mined yet
            return str(e)
        if not receipt:
            return None

        if receipt['status'] == 1:
            self._finish(tx_id, 'confirmed', block_number=receipt['blockNumber'])
            logger.info(f"Transaction {record['tx_hash']} confirmed in block {receipt['blockNumber']}")
        else:
            self._finish(tx_id, 'failed', error='Transaction failed on chain')
            logger.warning(f"Transaction {record['tx_hash']} reverted")
        return None

    def get_transaction_status(self, tx_id):
        if tx_id not in self.transactions:
            return {'error': 'Transaction not found'}

        lookup_error = self._refresh(tx_id)
        status = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in self.transactions[tx_id].items()
        }
        if 'finished_at' in status and status['status'] == 'confirmed':
            status['confirmed_at'] = status['finished_at']
        if lookup_error is not None:
            status['blockchain_error'] = lookup_error
        return status
