import os
import secrets
from functools import wraps

from eth_account import Account
from eth_account.messages import encode_defunct
from flask import Flask, current_app, jsonify, request, session
from web3 import Web3

from exceptions import ConfigurationError, MetadataError, RegistryError
from metadata import DEFAULT_GATEWAYS, fetch_metadata
from models import db
from registry import TokenRegistry, normalize_address
from transaction_tracker import TransactionTracker

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
AVALANCHE_TESTNET_RPC = "https://api.avax-test.network/ext/bc/C/rpc"


def default_database_uri():
    db_path = os.path.join(BASE_DIR, 'instance', 'registry.db')
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    return f'sqlite:///{db_path}'


def load_config(app):
    gateways = os.getenv('IPFS_GATEWAYS')
    app.config.update(
        SECRET_KEY=os.getenv('SECRET_KEY') or secrets.token_hex(32),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE='Lax',
        PERMANENT_SESSION_LIFETIME=3600,  # 1 hour
        SQLALCHEMY_DATABASE_URI=os.getenv('DATABASE_URL') or default_database_uri(),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        ADMIN_ADDRESS=os.getenv('ADMIN_ADDRESS'),
        ADMIN_PRIVATE_KEY=os.getenv('ADMIN_PRIVATE_KEY'),
        RPC_URL=os.getenv('RPC_URL', AVALANCHE_TESTNET_RPC),
        CONTRACT_ADDRESS=os.getenv('CONTRACT_ADDRESS'),
        CHAIN_ID=int(os.getenv('CHAIN_ID', 43113)),
        IPFS_GATEWAYS=[g.strip() for g in gateways.split(',')] if gateways else DEFAULT_GATEWAYS,
        METADATA_TIMEOUT=int(os.getenv('METADATA_TIMEOUT', 10)),
    )


def resolve_admin_address(config):
    key_address = None
    if config.get('ADMIN_PRIVATE_KEY'):
        key_address = Account.from_key(config['ADMIN_PRIVATE_KEY']).address

    if config.get('ADMIN_ADDRESS'):
        admin = normalize_address(config['ADMIN_ADDRESS'])
        if key_address is not None and key_address != admin:
            raise ConfigurationError(
                f'ADMIN_PRIVATE_KEY belongs to {key_address}, not ADMIN_ADDRESS {admin}'
            )
        return admin
    if key_address is not None:
        return key_address
    raise ConfigurationError('ADMIN_ADDRESS or ADMIN_PRIVATE_KEY must be configured')


def login_message(address, nonce):
    return (
        "Sign in to the Customizable NFT Registry\n"
        f"Address: {address}\n"
        f"Nonce: {nonce}"
    )


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'wallet_address' not in session:
            current_app.logger.warning(f"Unauthenticated request to {request.path}")
            return jsonify({'error': 'Login required'}), 401
        return f(*args, **kwargs)

    return decorated_function


def admin_required(f):
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if session['wallet_address'] != TokenRegistry().admin:
            current_app.logger.warning(f"Non-admin {session['wallet_address']} called {request.path}")
            return jsonify({'error': 'Admin wallet required'}), 403
        return f(*args, **kwargs)

    return decorated_function


def get_transaction_tracker():
    tracker = current_app.extensions.get('transaction_tracker')
    if tracker is None:
        raise ConfigurationError('CONTRACT_ADDRESS is not configured')
    return tracker


def json_body(*required):
    if not request.is_json:
        return None, (jsonify({'error': 'Missing JSON data'}), 400)
    data = request.get_json()
    if not isinstance(data, dict):
        return None, (jsonify({'error': 'JSON body must be an object'}), 400)
    missing = [key for key in required if key not in data]
    if missing:
        return None, (jsonify({'error': f"Missing fields: {', '.join(missing)}"}), 400)
    for key in required:
        if not isinstance(data[key], str):
            return None, (jsonify({'error': f'{key} must be a string'}), 400)
    return data, None


def register_routes(app):

    @app.errorhandler(RegistryError)
    def handle_registry_error(e):
        app.logger.warning(f"{type(e).__name__}: {str(e)}")
        return jsonify({'error': str(e), 'type': type(e).__name__}), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({'error': 'Not found'}), 404

    @app.route('/auth/nonce')
    def auth_nonce():
        address = request.args.get('address', '')
        address = normalize_address(address)
        message = login_message(address, secrets.token_hex(16))
        session['login_challenge'] = {'address': address, 'message': message}
        return jsonify({'address': address, 'message': message})

    @app.route('/auth/login', methods=['POST'])
    def auth_login():
        data, error = json_body('address', 'signature')
        if error:
            return error

        address = normalize_address(data['address'])
        challenge = session.pop('login_challenge', None)
        if not challenge or challenge['address'] != address:
            return jsonify({'error': 'No login challenge issued for this address'}), 401

        try:
            signer = Account.recover_message(
                encode_defunct(text=challenge['message']),
                signature=data['signature']
            )
        except Exception as e:
            app.logger.warning(f"Signature recovery failed for {address}: {str(e)}")
            return jsonify({'error': 'Invalid signature'}), 401

        if signer != address:
            app.logger.warning(f"Signature for {address} was made by {signer}")
            return jsonify({'error': 'Signature does not match address'}), 401

        session.clear()
        session['wallet_address'] = address
        session.permanent = True
        app.logger.info(f'User logged in with wallet: {address}')

        return jsonify({
            'success': True,
            'wallet_address': address,
            'is_admin': address == TokenRegistry().admin
        })

    @app.route('/logout')
    def logout():
        session.clear()
        return jsonify({'success': True})

    @app.route('/registry')
    def registry_info():
        registry = TokenRegistry()
        return jsonify({'admin': registry.admin, 'totalSupply': registry.total_supply()})

    @app.route('/tokens', methods=['POST'])
    @login_required
    def mint_token():
        data, error = json_body('recipient', 'traits', 'metadataURI')
        if error:
            return error

        token_id = TokenRegistry().mint(
            session['wallet_address'],
            data['recipient'],
            data['traits'],
            data['metadataURI']
        )
        app.logger.info(f"Token {token_id} minted for {data['recipient']}")
        return jsonify({'success': True, 'tokenId': token_id}), 201

    @app.route('/tokens/<int:token_id>/traits', methods=['PUT'])
    @login_required
    def update_token_traits(token_id):
        data, error = json_body('traits')
        if error:
            return error

        TokenRegistry().update_traits(session['wallet_address'], token_id, data['traits'])
        return jsonify({'success': True, 'tokenId': token_id, 'traits': data['traits']})

    @app.route('/tokens/<int:token_id>/metadata-uri')
    def token_metadata_uri(token_id):
        return jsonify({'tokenId': token_id, 'metadataURI': TokenRegistry().get_metadata_uri(token_id)})

    @app.route('/tokens/<int:token_id>')
    def token_details(token_id):
        return jsonify(TokenRegistry().get_token(token_id))

    @app.route('/tokens/<int:token_id>/metadata')
    def token_metadata(token_id):
        uri = TokenRegistry().get_metadata_uri(token_id)
        try:
            document = fetch_metadata(
                uri,
                gateways=app.config['IPFS_GATEWAYS'],
                timeout=app.config['METADATA_TIMEOUT']
            )
        except MetadataError as e:
            app.logger.error(f'Error fetching metadata for token {token_id}: {str(e)}')
            return jsonify({'error': str(e)}), 502
        return jsonify(document)

    @app.route('/chain/mint', methods=['POST'])
    @admin_required
    def chain_mint():
        data, error = json_body('recipient', 'traits', 'metadataURI')
        if error:
            return error

        result = get_transaction_tracker().submit_mint(
            recipient=data['recipient'],
            traits=data['traits'],
            metadata_uri=data['metadataURI'],
            admin_private_key=app.config['ADMIN_PRIVATE_KEY']
        )
        if not result['success']:
            app.logger.error(f"On-chain mint failed: {result['error']}")
            return jsonify(result), 500
        return jsonify(result), 202

    @app.route('/chain/tokens/<int:token_id>/traits', methods=['PUT'])
    @admin_required
    def chain_update_traits(token_id):
        data, error = json_body('traits')
        if error:
            return error

        result = get_transaction_tracker().submit_update_traits(
            token_id=token_id,
            traits=data['traits'],
            admin_private_key=app.config['ADMIN_PRIVATE_KEY']
        )
        if not result['success']:
            app.logger.error(f"On-chain trait update failed: {result['error']}")
            return jsonify(result), 500
        return jsonify(result), 202

    @app.route('/transaction_status/<tx_id>')
    def transaction_status(tx_id):
        status = get_transaction_tracker().get_transaction_status(tx_id)
        if 'error' in status and status.get('status') is None:
            return jsonify(status), 404
        return jsonify(status)


def create_app(config=None):
    app = Flask(__name__)
    load_config(app)
    if config:
        app.config.update(config)

    admin = resolve_admin_address(app.config)

    db.init_app(app)
    with app.app_context():
        db.create_all()
        registry_admin = TokenRegistry().initialize(admin)
    # The signing key has to be the registry admin or on-chain calls revert
    if app.config.get('ADMIN_PRIVATE_KEY') and registry_admin != admin:
        raise ConfigurationError(
            f'ADMIN_PRIVATE_KEY belongs to {admin}, but the registry admin is {registry_admin}'
        )

    tracker = app.config.get('TRANSACTION_TRACKER')
    if tracker is None and app.config.get('CONTRACT_ADDRESS'):
        web3 = Web3(Web3.HTTPProvider(app.config['RPC_URL']))
        tracker = TransactionTracker(web3, app.config['CONTRACT_ADDRESS'], app.config['CHAIN_ID'])
    if tracker is not None:
        app.extensions['transaction_tracker'] = tracker

    register_routes(app)
    app.logger.info(f'Token registry ready, admin {admin}')
    return app


if __name__ == '__main__':
    app = create_app()
    debug_mode = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=debug_mode)
