from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

from .records import TournamentRecord, UserRecord

db = SQLAlchemy()


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.String(64), primary_key=True)  # Trusted identity id (Telegram)
    username = db.Column(db.String(100), nullable=True)
    balance = db.Column(db.Integer, nullable=False, default=0)
    enrolled = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_users_balance_non_negative'),
    )

    def to_record(self) -> UserRecord:
        return UserRecord(
            id=self.id,
            balance=self.balance,
            enrolled=list(self.enrolled or []),
            username=self.username,
            created_at=self.created_at,
        )

    def apply(self, record: UserRecord):
        self.balance = record.balance
        self.enrolled = list(record.enrolled)  # New list so the JSON column is flagged dirty
        self.username = record.username

    @staticmethod
    def from_record(record: UserRecord) -> 'User':
        return User(
            id=record.id,
            username=record.username,
            balance=record.balance,
            enrolled=list(record.enrolled),
            created_at=record.created_at or datetime.utcnow(),
        )


class Tournament(db.Model):
    __tablename__ = 'tournaments'

    id = db.Column(db.String(50), primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False, default='')
    map_name = db.Column(db.String(100), nullable=True)
    tournament_type = db.Column(db.String(50), nullable=False, default='BATTLE ROYALE')
    status = db.Column(db.String(20), nullable=False, default='upcoming', index=True)

    entry_fee = db.Column(db.Integer, nullable=False, default=0)
    prize = db.Column(db.Integer, nullable=False, default=0)
    max_participants = db.Column(db.Integer, nullable=False, default=100)
    participants = db.Column(db.JSON, nullable=False, default=list)  # Ordered by join

    # Timestamps
    starts_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint('entry_fee >= 0', name='ck_tournaments_entry_fee_non_negative'),
        db.CheckConstraint('prize >= 0', name='ck_tournaments_prize_non_negative'),
        db.CheckConstraint('max_participants > 0', name='ck_tournaments_capacity_positive'),
    )

    def to_record(self) -> TournamentRecord:
        return TournamentRecord(
            id=self.id,
            title=self.title,
            description=self.description or '',
            map_name=self.map_name,
            tournament_type=self.tournament_type,
            status=self.status,
            entry_fee=self.entry_fee,
            prize=self.prize,
            max_participants=self.max_participants,
            participants=list(self.participants or []),
            starts_at=self.starts_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def apply(self, record: TournamentRecord):
        self.title = record.title
        self.description = record.description
        self.map_name = record.map_name
        self.tournament_type = record.tournament_type
        self.status = record.status
        self.entry_fee = record.entry_fee
        self.prize = record.prize
        self.max_participants = record.max_participants
        self.participants = list(record.participants)
        self.starts_at = record.starts_at
        self.updated_at = datetime.utcnow()

    @staticmethod
    def from_record(record: TournamentRecord) -> 'Tournament':
        now = datetime.utcnow()
        tournament = Tournament(id=record.id, created_at=record.created_at or now)
        tournament.apply(record)
        return tournament
