"""Emergency group chats: one active chat per emergency, stored message history."""
import logging

from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import or_

from .auth import current_user
from .errors import ApiError, Forbidden, NotFound
from .extensions import db
from .models import Chat, ChatMessage, EmergencyRequest
from .realtime import chat_room, push

logger = logging.getLogger(__name__)

chat_bp = Blueprint('chat', __name__, url_prefix='/api/chat')

WELCOME_MESSAGE = "Emergency chat room created. All participants can now communicate."


def get_chat_or_404(chat_id):
    chat = db.session.get(Chat, chat_id) if chat_id is not None else None
    if chat is None:
        raise NotFound("Chat not found")
    return chat


def _check_member(chat, user):
    if not chat.is_member(user):
        raise Forbidden("Not authorized to access this chat")


def get_or_create_chat(emergency):
    """The emergency's active chat, created with a system greeting on first use; the caller commits."""
    chat = Chat.query.filter_by(emergency_id=emergency.id, is_active=True).first()
    if chat is not None:
        return chat, False
    chat = Chat(emergency=emergency)
    db.session.add(chat)
    db.session.add(ChatMessage(chat=chat, sender_id=emergency.patient_id, sender_name="System",
                               sender_role="admin", content=WELCOME_MESSAGE, message_type="system",
                               read_by=[]))
    return chat, True


def broadcast_message(message):
    push('newMessage', message.to_dict(), chat_room(message.chat_id))


@chat_bp.route('', methods=['GET'])
@jwt_required()
def get_my_chats():
    user = current_user()
    chats = (Chat.query.join(EmergencyRequest, Chat.emergency_id == EmergencyRequest.id)
             .filter(Chat.is_active.is_(True),
                     or_(EmergencyRequest.patient_id == user.id,
                         EmergencyRequest.assigned_doctor_id == user.id,
                         EmergencyRequest.assigned_volunteer_id == user.id,
                         EmergencyRequest.assigned_driver_id == user.id))
             .order_by(Chat.last_message_at.desc()).all())
    return jsonify({"success": True, "count": len(chats),
                    "data": [c.to_dict(viewer_id=user.id) for c in chats]}), 200


@chat_bp.route('/emergency/<int:emergency_id>', methods=['GET'])
@jwt_required()
def get_emergency_chat(emergency_id):
    user = current_user()
    emergency = db.session.get(EmergencyRequest, emergency_id)
    if emergency is None:
        raise NotFound("Emergency not found")
    if user.role != 'admin' and not emergency.is_participant(user.id):
        raise Forbidden("Not authorized to access this chat")

    chat, created = get_or_create_chat(emergency)
    db.session.commit()
    if created:
        logger.info("Chat %s opened for emergency %s", chat.id, emergency.id)
    return jsonify({"success": True, "data": chat.to_dict(viewer_id=user.id)}), 200


@chat_bp.route('/<int:chat_id>/messages', methods=['GET'])
@jwt_required()
def get_messages(chat_id):
    """Newest first, paginated with ?page and ?limit."""
    user = current_user()
    chat = get_chat_or_404(chat_id)
    _check_member(chat, user)

    page = max(request.args.get('page', 1, type=int), 1)
    limit = min(max(request.args.get('limit', 50, type=int), 1), 200)
    total = chat.messages.count()
    messages = (chat.messages.order_by(None).order_by(ChatMessage.id.desc())
                .offset((page - 1) * limit).limit(limit).all())
    return jsonify({"success": True, "data": {
        "chat": chat.to_dict(viewer_id=user.id),
        "messages": [m.to_dict() for m in messages],
        "pagination": {"page": page, "limit": limit, "total": total, "hasMore": page * limit < total},
    }}), 200


@chat_bp.route('/<int:chat_id>/message', methods=['POST'])
@jwt_required()
def send_message(chat_id):
    user = current_user()
    chat = get_chat_or_404(chat_id)
    _check_member(chat, user)

    data = request.get_json(silent=True) or {}
    message = chat.add_message(user, data.get('content'), data.get('messageType') or 'text',
                               voice_url=data.get('voiceUrl'), offline=data.get('isOfflineMessage'))
    db.session.commit()
    broadcast_message(message)
    return jsonify({"success": True, "data": message.to_dict()}), 201


@chat_bp.route('/<int:chat_id>/read', methods=['PUT'])
@jwt_required()
def mark_as_read(chat_id):
    user = current_user()
    chat = get_chat_or_404(chat_id)
    _check_member(chat, user)
    count = chat.mark_read(user.id)
    db.session.commit()
    return jsonify({"success": True, "message": "Messages marked as read", "count": count}), 200


@chat_bp.route('/sync-offline', methods=['POST'])
@jwt_required()
def sync_offline_messages():
    """Stores messages written while offline; each one reports its own outcome."""
    user = current_user()
    items = (request.get_json(silent=True) or {}).get('messages')
    if not isinstance(items, list):
        raise ApiError("messages must be a list")

    results, stored = [], []
    for item in items:
        item = item if isinstance(item, dict) else {}
        result = {"localId": item.get('localId'), "chatId": item.get('chatId')}
        try:
            chat = get_chat_or_404(item.get('chatId'))
            _check_member(chat, user)
            stored.append(chat.add_message(user, item.get('content'), item.get('messageType') or 'text',
                                           offline=True))
            result["success"] = True
        except ApiError as e:
            result.update(success=False, error=e.message)
        results.append(result)

    db.session.commit()
    for message in stored:
        broadcast_message(message)
    return jsonify({"success": True, "data": results}), 200
