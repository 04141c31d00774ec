from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


db = SQLAlchemy()


class Token(db.Model):
    __tablename__ = 'tokens'

    # Assigned by the registry counter, starting at 0
    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    owner = db.Column(db.String(42), nullable=False, index=True)
    traits = db.Column(db.Text, nullable=False, default='')
    metadata_uri = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'tokenId': self.id,
            'owner': self.owner,
            'traits': self.traits,
            'metadataURI': self.metadata_uri,
        }


class RegistryState(db.Model):
    __tablename__ = 'registry_state'

    id = db.Column(db.Integer, primary_key=True)
    next_id = db.Column(db.Integer, nullable=False, default=0)
    admin = db.Column(db.String(42), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
