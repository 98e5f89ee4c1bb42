from datetime import timezone

from flask import Blueprint, request, jsonify
from marshmallow import EXCLUDE, Schema, fields, post_load, validate
from marshmallow import ValidationError as SchemaValidationError
import logging

from access import current_owner_id, find_owned, owner_filter
from errors import ValidationError
from models import db, Project, Task
from sessions import with_context

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class NaiveUTCSchema(Schema):
    """日期一律轉成 UTC 並去掉 tzinfo 再存進資料庫"""

    class Meta:
        unknown = EXCLUDE

    @post_load
    def normalize_dates(self, data, **kwargs):
        for key, value in data.items():
            if hasattr(value, 'tzinfo') and value.tzinfo is not None:
                data[key] = value.astimezone(timezone.utc).replace(tzinfo=None)
        return data


class ProjectSchema(NaiveUTCSchema):
    """建立 / 更新專案驗證 (更新時用 partial=True)"""
    name = fields.Str(
        required=True,
        validate=[
            validate.Length(min=1, error='Project name is required'),
            validate.Length(max=255)
        ],
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(allow_none=True)
    start_date = fields.DateTime(data_key='startDate', allow_none=True)
    end_date = fields.DateTime(data_key='endDate', allow_none=True)

# ============================================
# 輔助函數
# ============================================

def get_json_body():
    data = request.get_json(silent=True)
    if data is None or not isinstance(data, dict):
        raise ValidationError('Request body must be JSON')
    return data


def load_request_data(schema, data, partial=False):
    """
    統一的輸入驗證

    驗證失敗丟 ValidationError,error 是第一個欄位的第一個訊息,
    details 是 marshmallow 的完整錯誤
    """
    try:
        return schema.load(data, partial=partial)
    except SchemaValidationError as err:
        first = next(iter(err.messages.values()))
        message = first[0] if isinstance(first, list) and first else 'Validation failed'
        raise ValidationError(message, details=err.messages)


def apply_changes(instance, changes):
    """只更新有帶的欄位,沒帶的維持原值"""
    for field, value in changes.items():
        setattr(instance, field, value)

# ============================================
# 建立專案
# ============================================

@projects_bp.route('/projects', methods=['POST'])
@with_context
def create_project(ctx):
    """建立新專案,登入時 owner 設為目前使用者"""
    result = load_request_data(ProjectSchema(), get_json_body())

    project = Project(
        name=result['name'],
        description=result.get('description'),
        start_date=result.get('start_date'),
        end_date=result.get('end_date'),
        owner_id=current_owner_id(ctx)
    )

    try:
        db.session.add(project)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating project: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project creation failed due to server error'}), 500

    logger.info(f"Project created: {project.id} by owner {project.owner_id}")
    return jsonify(project.to_dict()), 201

# ============================================
# 查詢專案
# ============================================

@projects_bp.route('/projects', methods=['GET'])
@with_context
def list_projects(ctx):
    """列出專案 (登入時只列自己的)"""
    projects = Project.query.filter_by(**owner_filter(ctx)).order_by(Project.created_at).all()
    return jsonify([p.to_dict() for p in projects]), 200


@projects_bp.route('/projects/<project_id>', methods=['GET'])
@with_context
def get_project(ctx, project_id):
    project = find_owned(Project, project_id, ctx, 'project')
    return jsonify(project.to_dict()), 200

# ============================================
# 更新專案
# ============================================

@projects_bp.route('/projects/<project_id>', methods=['PUT'])
@with_context
def update_project(ctx, project_id):
    """部分更新:body 沒帶的欄位不會被改"""
    project = find_owned(Project, project_id, ctx, 'project')
    changes = load_request_data(ProjectSchema(), get_json_body(), partial=True)

    if not changes:
        return jsonify(project.to_dict()), 200

    apply_changes(project, changes)

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error updating project: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project update failed due to server error'}), 500

    logger.info(f"Project {project.id} updated: {', '.join(changes)}")
    return jsonify(project.to_dict()), 200

# ============================================
# 刪除專案 (連同底下的任務)
# ============================================

@projects_bp.route('/projects/<project_id>', methods=['DELETE'])
@with_context
def delete_project(ctx, project_id):
    project = find_owned(Project, project_id, ctx, 'project')

    try:
        task_count = Task.query.filter_by(project_id=project.id).delete()
        db.session.delete(project)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error deleting project: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project deletion failed due to server error'}), 500

    logger.info(f"Project {project_id} deleted with {task_count} tasks")
    return jsonify({'message': 'Project and associated tasks deleted successfully'}), 200
