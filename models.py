from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import re
import secrets

db = SQLAlchemy()

# 24 碼 hex,跟 document store 的 ObjectId 同樣形狀
OBJECT_ID_PATTERN = re.compile(r'^[0-9a-f]{24}$')


def new_object_id():
    return secrets.token_hex(12)


def is_object_id(value):
    return isinstance(value, str) and bool(OBJECT_ID_PATTERN.match(value))


def _iso(value):
    return value.isoformat() if value else None

# ============================================
# 1. Identity 模型 (社群登入的使用者)
# ============================================
class Identity(db.Model):
    id = db.Column(db.String(24), primary_key=True, default=new_object_id)
    social_id = db.Column(db.String(255), nullable=False)
    platform = db.Column(db.String(20), nullable=False)  # google, github, linkedin
    name = db.Column(db.String(255))
    email = db.Column(db.String(255))
    profile_picture = db.Column(db.String(1000), default='')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login = db.Column(db.DateTime)

    # 關聯
    projects = db.relationship('Project', backref='owner', lazy=True)

    # 同一個平台的同一個帳號只能有一筆,避免同時第一次登入時重複建立
    __table_args__ = (
        db.UniqueConstraint('social_id', 'platform', name='unique_social_identity'),
    )

    def to_profile(self):
        return {
            'name': self.name,
            'email': self.email,
            'profilePicture': self.profile_picture or '',
            'platform': self.platform,
            'lastLogin': _iso(self.last_login)
        }

# ============================================
# 2. SessionRecord 模型 (server-side session)
# ============================================
class SessionRecord(db.Model):
    __tablename__ = 'session_record'

    id = db.Column(db.String(64), primary_key=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

# ============================================
# 3. Project 模型
# ============================================
class Project(db.Model):
    id = db.Column(db.String(24), primary_key=True, default=new_object_id)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    owner_id = db.Column(db.String(24), db.ForeignKey('identity.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # project_id 沒有 foreign key: 更新時不重新檢查專案是否存在
    # 刪除專案時由 handler 自己刪 task (不靠 ORM cascade)
    tasks = db.relationship(
        'Task',
        primaryjoin='Project.id == foreign(Task.project_id)',
        backref='parent_project',
        lazy=True,
        passive_deletes=True
    )

    __table_args__ = (
        db.Index('idx_project_owner', 'owner_id'),
    )

    def to_dict(self):
        data = {
            '_id': self.id,
            'name': self.name,
            'owner': self.owner_id,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at)
        }
        # 沒填的選填欄位不出現在回應裡
        if self.description is not None:
            data['description'] = self.description
        if self.start_date is not None:
            data['startDate'] = _iso(self.start_date)
        if self.end_date is not None:
            data['endDate'] = _iso(self.end_date)
        return data

# ============================================
# 4. Task 模型
# ============================================
class Task(db.Model):
    id = db.Column(db.String(24), primary_key=True, default=new_object_id)
    project_id = db.Column(db.String(24), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    duration = db.Column(db.Float)
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    owner_id = db.Column(db.String(24), db.ForeignKey('identity.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index('idx_task_owner_project', 'owner_id', 'project_id'),
    )

    def to_dict(self, populate_project=False):
        """
        populate_project=True 時 project 欄位展開成 {_id, name},
        對應列表和單筆查詢的回應格式
        """
        if populate_project and self.parent_project is not None:
            project = {'_id': self.parent_project.id, 'name': self.parent_project.name}
        else:
            project = self.project_id

        data = {
            '_id': self.id,
            'project': project,
            'name': self.name,
            'owner': self.owner_id,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at)
        }
        if self.description is not None:
            data['description'] = self.description
        if self.duration is not None:
            data['duration'] = self.duration
        if self.start_date is not None:
            data['startDate'] = _iso(self.start_date)
        if self.end_date is not None:
            data['endDate'] = _iso(self.end_date)
        return data
