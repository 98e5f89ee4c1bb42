from flask import Blueprint, request, jsonify
from marshmallow import fields, validate
import logging

from access import current_owner_id, find_owned, owner_filter, require_object_id
from errors import NotFoundError
from models import db, Project, Task
from projects import NaiveUTCSchema, apply_changes, get_json_body, load_request_data
from sessions import with_context

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class TaskSchema(NaiveUTCSchema):
    """建立 / 更新任務驗證 (project 另外檢查)"""
    name = fields.Str(
        required=True,
        validate=[
            validate.Length(min=1, error='Task name is required'),
            validate.Length(max=255)
        ],
        error_messages={'required': 'Task name is required'}
    )
    description = fields.Str(allow_none=True)
    duration = fields.Float(allow_none=True, validate=validate.Range(min=0))
    start_date = fields.DateTime(data_key='startDate', allow_none=True)
    end_date = fields.DateTime(data_key='endDate', allow_none=True)

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('/tasks', methods=['POST'])
@with_context
def create_task(ctx):
    """
    在專案底下建立任務

    先檢查 project id 形狀 (400),再檢查專案存在且屬於自己 (404)
    """
    data = get_json_body()
    project_id = require_object_id(data.get('project'), 'Invalid project id')
    result = load_request_data(TaskSchema(), data)

    parent = Project.query.filter_by(id=project_id, **owner_filter(ctx)).first()
    if parent is None:
        raise NotFoundError('Parent project not found or you do not own this project')

    task = Task(
        project_id=parent.id,
        name=result['name'],
        description=result.get('description'),
        duration=result.get('duration'),
        start_date=result.get('start_date'),
        end_date=result.get('end_date'),
        owner_id=current_owner_id(ctx)
    )

    try:
        db.session.add(task)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating task: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task creation failed due to server error'}), 500

    logger.info(f"Task created: {task.id} in project {parent.id}")
    return jsonify(task.to_dict()), 201

# ============================================
# 查詢任務
# ============================================

@tasks_bp.route('/tasks', methods=['GET'])
@with_context
def list_tasks(ctx):
    """列出任務,可以用 ?project=<id> 只看某個專案"""
    filters = owner_filter(ctx)

    project_id = request.args.get('project')
    if project_id:
        filters['project_id'] = require_object_id(project_id, 'Invalid project id')

    tasks = Task.query.filter_by(**filters).order_by(Task.created_at).all()
    return jsonify([t.to_dict(populate_project=True) for t in tasks]), 200


@tasks_bp.route('/tasks/<task_id>', methods=['GET'])
@with_context
def get_task(ctx, task_id):
    task = find_owned(Task, task_id, ctx, 'task')
    return jsonify(task.to_dict(populate_project=True)), 200

# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/tasks/<task_id>', methods=['PUT'])
@with_context
def update_task(ctx, task_id):
    """
    部分更新任務

    可以改 project,但只檢查 id 形狀,不重新檢查專案是否存在
    """
    task = find_owned(Task, task_id, ctx, 'task')
    data = get_json_body()
    changes = load_request_data(TaskSchema(), data, partial=True)

    if 'project' in data:
        changes['project_id'] = require_object_id(data['project'], 'Invalid project id')

    if changes:
        apply_changes(task, changes)
        try:
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Error updating task: {str(e)}", exc_info=True)
            return jsonify({'error': 'Task update failed due to server error'}), 500

        logger.info(f"Task {task.id} updated: {', '.join(changes)}")

    return jsonify(task.to_dict()), 200

# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/tasks/<task_id>', methods=['DELETE'])
@with_context
def delete_task(ctx, task_id):
    task = find_owned(Task, task_id, ctx, 'task')

    try:
        db.session.delete(task)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error deleting task: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task deletion failed due to server error'}), 500

    logger.info(f"Task {task_id} deleted")
    return jsonify({'message': 'Task deleted successfully'}), 200
