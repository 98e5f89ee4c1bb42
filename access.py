from errors import MalformedIdentifierError, NotFoundError
from models import is_object_id

# ============================================
# 擁有者過濾 (所有 resource handler 共用)
# ============================================

def owner_filter(ctx):
    """
    登入時只看得到自己的資料: {'owner_id': <identity id>}
    未登入時不過濾: {}
    """
    if ctx.identity is not None:
        return {'owner_id': ctx.identity.id}
    return {}


def current_owner_id(ctx):
    return ctx.identity.id if ctx.identity is not None else None


def require_object_id(value, message='Invalid id'):
    """id 形狀不對直接 400,不要讓它到資料庫才出錯"""
    if not is_object_id(value):
        raise MalformedIdentifierError(message)
    return value


def find_owned(model, object_id, ctx, entity='resource'):
    """
    依 id + 擁有者找一筆資料

    不是自己的資料一律當作找不到 (404),不回 403
    """
    require_object_id(object_id, f'Invalid {entity} id')
    instance = model.query.filter_by(id=object_id, **owner_filter(ctx)).first()
    if instance is None:
        raise NotFoundError(f'{entity.capitalize()} not found or you do not own this {entity}')
    return instance
