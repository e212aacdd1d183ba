"""Socket.IO rooms, client events and server-side push helpers.

Sockets authenticate with the same JWT as the REST API, passed as
`auth={"token": ...}` or `?token=` on connect, and may only join rooms of
emergencies and chats they take part in.

Rooms:
    user_<id>        every socket of one user
    emergency_<id>   everyone following one emergency (tracking, payments)
    chat_<id>        one conversation
"""
import logging

from flask import request
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_socketio import emit, join_room, leave_room
from jwt.exceptions import PyJWTError

from .errors import ApiError
from .extensions import db, socketio
from .models import Chat, EmergencyRequest, User, utcnow

logger = logging.getLogger(__name__)

# helperId -> last reported position
_helper_locations = {}
# socket id -> authenticated user id
_socket_users = {}


def user_room(user_id):
    return f"user_{user_id}"


def emergency_room(emergency_id):
    return f"emergency_{emergency_id}"


def chat_room(chat_id):
    return f"chat_{chat_id}"


def _unwrap(data, key):
    """Clients send either a bare id or an object carrying it."""
    if isinstance(data, dict):
        return data.get(key)
    return data


# ------------------------------------------------------------------
# Server-side push
# ------------------------------------------------------------------
def push(event, payload, *rooms):
    """Emits to each named room; a failed emit never fails the caller."""
    for room in rooms:
        if room is None:
            continue
        try:
            socketio.emit(event, payload, to=room)
        except Exception as e:
            logger.warning("Could not emit %s to %s: %s", event, room, e)


def push_to_emergency(emergency_id, event, payload):
    if emergency_id is not None:
        push(event, payload, emergency_room(emergency_id))


def push_to_users(event, payload, *user_ids):
    push(event, payload, *[user_room(u) for u in user_ids if u is not None])


def last_known_location(helper_id):
    return _helper_locations.get(str(helper_id))


# ------------------------------------------------------------------
# Client events
# ------------------------------------------------------------------
def _to_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _socket_user():
    user_id = _socket_users.get(request.sid)
    return db.session.get(User, user_id) if user_id is not None else None


def _refuse(message):
    emit('socketError', {'message': message})


def _followed_emergency(user, emergency_id):
    """The emergency if the user may follow it, else None."""
    emergency = db.session.get(EmergencyRequest, emergency_id) if emergency_id is not None else None
    if emergency is None:
        return None
    if user.role != 'admin' and not emergency.is_participant(user.id):
        return None
    return emergency


def _member_chat(user, chat_id):
    chat = db.session.get(Chat, chat_id) if chat_id is not None else None
    if chat is None or not chat.is_member(user):
        return None
    return chat


@socketio.on('connect')
def handle_connect(auth=None):
    token = auth.get('token') if isinstance(auth, dict) else None
    token = token or request.args.get('token')
    if not token:
        logger.info("Rejected socket %s: no token", request.sid)
        return False
    try:
        identity = decode_token(token)['sub']
    except (JWTExtendedException, PyJWTError) as e:
        logger.info("Rejected socket %s: %s", request.sid, e)
        return False

    user_id = _to_int(identity)
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None or not user.is_active:
        return False
    _socket_users[request.sid] = user.id
    join_room(user_room(user.id))
    logger.info("Client connected: %s (user %s)", request.sid, user.id)


@socketio.on('disconnect')
def handle_disconnect(reason=None):
    _socket_users.pop(request.sid, None)
    logger.info("Client disconnected: %s", request.sid)


@socketio.on('join')
def handle_join(data):
    """Sockets join their own user room on connect; this only re-joins it."""
    own_id = _socket_users.get(request.sid)
    user_id = _to_int(_unwrap(data, 'userId'))
    if user_id is not None and user_id != own_id:
        return _refuse("Cannot join another user's room")
    join_room(user_room(own_id))


@socketio.on('joinEmergency')
def handle_join_emergency(data):
    emergency_id = _to_int(_unwrap(data, 'emergencyId'))
    if _followed_emergency(_socket_user(), emergency_id) is None:
        return _refuse("Not authorized to follow this emergency")
    join_room(emergency_room(emergency_id))
    emit('joinedRoom', {'room': emergency_room(emergency_id)})


@socketio.on('leaveEmergency')
def handle_leave_emergency(data):
    emergency_id = _to_int(_unwrap(data, 'emergencyId'))
    if emergency_id is not None:
        leave_room(emergency_room(emergency_id))


@socketio.on('joinChat')
def handle_join_chat(data):
    chat_id = _to_int(_unwrap(data, 'chatId'))
    if _member_chat(_socket_user(), chat_id) is None:
        return _refuse("Not authorized to access this chat")
    join_room(chat_room(chat_id))


@socketio.on('leaveChat')
def handle_leave_chat(data):
    chat_id = _to_int(_unwrap(data, 'chatId'))
    if chat_id is not None:
        leave_room(chat_room(chat_id))


@socketio.on('sendChatMessage')
def handle_chat_message(data):
    """Stores the message, then delivers it to the chat room."""
    data = data or {}
    user = _socket_user()
    chat = _member_chat(user, _to_int(data.get('chatId')))
    if chat is None:
        return _refuse("Not authorized to access this chat")

    message = data.get('message')
    if not isinstance(message, dict):
        message = {'content': message}
    try:
        stored = chat.add_message(user, message.get('content'), message.get('messageType') or 'text',
                                  voice_url=message.get('voiceUrl'))
        db.session.commit()
    except ApiError as e:
        db.session.rollback()
        return _refuse(e.message)
    emit('newMessage', stored.to_dict(), to=chat_room(chat.id))


@socketio.on('userTyping')
def handle_typing(data):
    data = data or {}
    user = _socket_user()
    chat_id = _to_int(data.get('chatId'))
    if _member_chat(user, chat_id) is None:
        return
    emit('typingStatus', {
        'userId': user.id,
        'userName': user.name,
        'isTyping': bool(data.get('isTyping')),
    }, to=chat_room(chat_id), include_self=False)


@socketio.on('updateLocation')
def handle_update_location(data):
    """Helpers report their own position; it is relayed to an emergency they serve."""
    data = data or {}
    user = _socket_user()
    latitude, longitude = data.get('latitude'), data.get('longitude')
    if latitude is None or longitude is None:
        return
    claimed = _to_int(data.get('userId'))
    if claimed is not None and claimed != user.id:
        return _refuse("Cannot report another user's location")

    emergency_id = _to_int(data.get('emergencyId'))
    location = {
        'userId': user.id,
        'emergencyId': emergency_id,
        'latitude': latitude,
        'longitude': longitude,
        'timestamp': utcnow().isoformat(),
    }
    _helper_locations[str(user.id)] = location
    if emergency_id is not None and _followed_emergency(user, emergency_id) is not None:
        emit('locationUpdate', location, to=emergency_room(emergency_id))


@socketio.on('getHelperLocation')
def handle_get_helper_location(data):
    location = last_known_location(_unwrap(data, 'helperId'))
    if location:
        emit('locationUpdate', location)


@socketio.on('updateStatus')
def handle_update_status(data):
    data = data or {}
    emergency_id = _to_int(data.get('emergencyId'))
    if _followed_emergency(_socket_user(), emergency_id) is None:
        return _refuse("Not authorized to follow this emergency")
    emit('statusUpdate', {
        'emergencyId': emergency_id,
        'status': data.get('status'),
        'timestamp': utcnow().isoformat(),
    }, to=emergency_room(emergency_id))
