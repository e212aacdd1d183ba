import uuid
from datetime import datetime, timezone

from werkzeug.security import generate_password_hash, check_password_hash

from .errors import ApiError
from .extensions import db

ROLES = ("patient", "doctor", "volunteer", "driver", "admin")
HELPER_ROLES = ("doctor", "volunteer", "driver")

ORDER_STATUSES = ("pending", "paid", "completed", "cancelled")
# Statuses that block creating another order for the same emergency/helper/service
ACTIVE_ORDER_STATUSES = ("pending", "paid", "completed")

EMERGENCY_STATUSES = ("pending", "assigned", "en-route", "arrived", "completed", "cancelled")
PAYMENT_STATUSES = ("none", "pending", "paid", "distributed")
URGENCY_LEVELS = ("critical", "high", "medium", "low")
MESSAGE_TYPES = ("text", "voice", "system", "location")
BLOOD_TYPES = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-")
RECORD_STATUSES = ("active", "follow-up-required", "completed", "transferred")


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


# ==============================================================================
# --- DATABASE MODELS ---
# ==============================================================================

class User(db.Model):
    """Patients, helpers (doctor / volunteer / driver) and admins."""
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="patient")

    phone = db.Column(db.String(20), nullable=True)
    bkash_number = db.Column(db.String(11), nullable=True)

    # Doctor-only details
    specialization = db.Column(db.String(120), nullable=True)
    experience = db.Column(db.Integer, nullable=True)
    prescription_fee = db.Column(db.Integer, nullable=True, default=50)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_on_duty = db.Column(db.Boolean, nullable=False, default=False)
    availability = db.Column(db.Boolean, nullable=False, default=True)
    active_emergencies = db.Column(db.Integer, nullable=False, default=0)

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    address = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def payment_contact(self):
        """bKash number, falling back to the phone number many helpers use for bKash."""
        return self.bkash_number or self.phone or None

    @property
    def has_location(self):
        if self.latitude is None or self.longitude is None:
            return False
        return not (self.latitude == 0 and self.longitude == 0)

    def to_dict(self):
        data = {
            "id": self.id, "name": self.name, "email": self.email, "role": self.role,
            "phone": self.phone, "bkashNumber": self.bkash_number,
            "isOnDuty": self.is_on_duty, "availability": self.availability,
            "location": {"coordinates": [self.longitude, self.latitude], "address": self.address},
        }
        if self.role == "doctor":
            data.update({"specialization": self.specialization, "experience": self.experience,
                         "prescriptionFee": self.prescription_fee})
        return data

    def __repr__(self):
        return f'<User {self.id} {self.role}>'


class EmergencyRequest(db.Model):
    """A patient's request for help; the aggregate the payment flow hangs off."""
    __tablename__ = 'emergency_request'
    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)

    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    address = db.Column(db.String(255), nullable=True)

    description = db.Column(db.String(500), nullable=True)
    urgency_level = db.Column(db.String(20), nullable=False, default="high")
    requested_role = db.Column(db.String(20), nullable=False, default="doctor")
    items_needed = db.Column(db.String(300), nullable=True)
    items_cost = db.Column(db.Float, nullable=False, default=0)
    # Transport distance in km entered by the patient for ambulance requests
    distance = db.Column(db.Float, nullable=False, default=0)
    payment_status = db.Column(db.String(20), nullable=False, default="none")

    assigned_doctor_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    assigned_volunteer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    assigned_driver_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    ambulance_service = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    assigned_at = db.Column(db.DateTime, nullable=True)
    arrived_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    patient = db.relationship('User', foreign_keys=[patient_id])
    assigned_doctor = db.relationship('User', foreign_keys=[assigned_doctor_id])
    assigned_volunteer = db.relationship('User', foreign_keys=[assigned_volunteer_id])
    assigned_driver = db.relationship('User', foreign_keys=[assigned_driver_id])

    @property
    def resolved_distance(self):
        """Distance entered on the request, or the one recorded with an ambulance booking."""
        if self.distance:
            return self.distance
        if self.ambulance_service and self.ambulance_service.get("distance"):
            return self.ambulance_service["distance"]
        return None

    def assigned_helper_ids(self):
        return [h for h in (self.assigned_doctor_id, self.assigned_volunteer_id, self.assigned_driver_id) if h]

    def is_participant(self, user_id):
        return user_id == self.patient_id or user_id in self.assigned_helper_ids()

    def to_dict(self):
        def _user(u):
            return u.to_dict() if u else None

        return {
            "id": self.id, "patient": _user(self.patient),
            "location": {"coordinates": [self.longitude, self.latitude], "address": self.address},
            "description": self.description, "urgencyLevel": self.urgency_level,
            "requestedRole": self.requested_role, "itemsNeeded": self.items_needed,
            "itemsCost": self.items_cost, "distance": self.distance,
            "paymentStatus": self.payment_status,
            "assignedDoctor": _user(self.assigned_doctor),
            "assignedVolunteer": _user(self.assigned_volunteer),
            "assignedDriver": _user(self.assigned_driver),
            "ambulanceService": self.ambulance_service,
            "status": self.status, "notes": self.notes,
            "assignedAt": _iso(self.assigned_at), "arrivedAt": _iso(self.arrived_at),
            "completedAt": _iso(self.completed_at), "cancelledAt": _iso(self.cancelled_at),
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f'<EmergencyRequest {self.id} - {self.status} - {self.payment_status}>'


class Order(db.Model):
    """A payment request from a patient to one helper for one service."""
    __tablename__ = 'order'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))

    patient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    driver_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    volunteer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    emergency_id = db.Column(db.Integer, db.ForeignKey('emergency_request.id'), nullable=True, index=True)

    service_type = db.Column(db.String(40), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    transaction_id = db.Column(db.String(64), nullable=True)
    # bKash number the patient sends the money to
    payment_to = db.Column(db.String(20), nullable=True)
    payment_distributed = db.Column(db.Boolean, nullable=False, default=False)
    payment_distributed_at = db.Column(db.DateTime, nullable=True)

    # Ambulance details
    distance = db.Column(db.Float, nullable=True)
    equipment = db.Column(db.JSON, nullable=True)
    # Volunteer purchase details
    item_price = db.Column(db.Float, nullable=True)
    volunteer_fee = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    emergency = db.relationship('EmergencyRequest', backref=db.backref('orders', lazy='dynamic'))

    @property
    def helper_id(self):
        return self.doctor_id or self.driver_id or self.volunteer_id

    def to_dict(self):
        prescription = self.prescription
        return {
            "orderId": self.order_id, "patientId": self.patient_id,
            "doctorId": self.doctor_id, "driverId": self.driver_id, "volunteerId": self.volunteer_id,
            "emergencyId": self.emergency_id, "serviceType": self.service_type,
            "amount": self.amount, "status": self.status,
            "transactionId": self.transaction_id, "paymentTo": self.payment_to,
            "paymentDistributed": self.payment_distributed,
            "paymentDistributedAt": _iso(self.payment_distributed_at),
            "distance": self.distance, "equipment": self.equipment or [],
            "itemPrice": self.item_price, "volunteerFee": self.volunteer_fee,
            "prescriptionId": prescription.id if prescription else None,
            "createdAt": _iso(self.created_at), "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Order {self.order_id} {self.service_type} {self.status}>'


class Prescription(db.Model):
    """Detailed prescription issued by a doctor against a paid PRESCRIPTION order."""
    __tablename__ = 'prescription'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'), unique=True, nullable=False)
    patient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    emergency_id = db.Column(db.Integer, db.ForeignKey('emergency_request.id'), nullable=True)

    medicines = db.Column(db.JSON, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    follow_up_date = db.Column(db.Date, nullable=True)
    pdf_path = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="issued")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    order = db.relationship('Order', backref=db.backref('prescription', uselist=False))

    def to_dict(self):
        return {
            "id": self.id, "orderId": self.order.order_id if self.order else None,
            "patientId": self.patient_id, "doctorId": self.doctor_id,
            "emergencyId": self.emergency_id, "medicines": self.medicines,
            "notes": self.notes, "followUpDate": _iso(self.follow_up_date),
            "status": self.status, "createdAt": _iso(self.created_at),
        }


class Chat(db.Model):
    """Group conversation between the patient and the helpers of one emergency.

    Membership follows the emergency's current assignment, so a newly
    assigned helper sees the history and a replaced one loses access.
    """
    __tablename__ = 'chat'
    id = db.Column(db.Integer, primary_key=True)
    emergency_id = db.Column(db.Integer, db.ForeignKey('emergency_request.id'), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_message_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    emergency = db.relationship('EmergencyRequest')
    messages = db.relationship('ChatMessage', backref='chat', lazy='dynamic', order_by='ChatMessage.id')

    def is_member(self, user):
        return user.role == 'admin' or self.emergency.is_participant(user.id)

    def add_message(self, sender, content, message_type='text', voice_url=None, offline=False):
        """Appends a message from sender; the caller commits."""
        content = str(content or '').strip()
        if not content:
            raise ApiError("Message content is required")
        if message_type not in MESSAGE_TYPES:
            raise ApiError(f"messageType must be one of: {', '.join(MESSAGE_TYPES)}")
        message = ChatMessage(chat=self, sender_id=sender.id, sender_name=sender.name, sender_role=sender.role,
                              content=content, message_type=message_type, voice_url=voice_url,
                              is_offline_message=bool(offline), read_by=[sender.id])
        db.session.add(message)
        self.last_message_at = utcnow()
        return message

    def unread_messages(self, user_id):
        return [m for m in self.messages if m.sender_id != user_id and user_id not in (m.read_by or [])]

    def mark_read(self, user_id):
        """Marks every message as read by user_id and returns how many changed; the caller commits."""
        unread = self.unread_messages(user_id)
        for message in unread:
            # JSON columns only notice reassignment
            message.read_by = list(message.read_by or []) + [user_id]
        return len(unread)

    def to_dict(self, viewer_id=None):
        emergency = self.emergency
        participants = [emergency.patient] + [u for u in (emergency.assigned_doctor, emergency.assigned_volunteer,
                                                          emergency.assigned_driver) if u is not None]
        data = {
            "id": self.id, "emergencyId": self.emergency_id, "isActive": self.is_active,
            "participants": [{"id": u.id, "name": u.name, "role": u.role, "phone": u.phone} for u in participants],
            "lastMessageAt": _iso(self.last_message_at), "createdAt": _iso(self.created_at),
        }
        if viewer_id is not None:
            data["unreadCount"] = len(self.unread_messages(viewer_id))
        return data


class ChatMessage(db.Model):
    __tablename__ = 'chat_message'
    id = db.Column(db.Integer, primary_key=True)
    chat_id = db.Column(db.Integer, db.ForeignKey('chat.id'), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    sender_name = db.Column(db.String(120), nullable=False)
    sender_role = db.Column(db.String(20), nullable=False)
    content = db.Column(db.Text, nullable=False)
    message_type = db.Column(db.String(20), nullable=False, default="text")
    voice_url = db.Column(db.String(255), nullable=True)
    is_offline_message = db.Column(db.Boolean, nullable=False, default=False)
    # User ids that have read the message, sender included
    read_by = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id, "chatId": self.chat_id, "senderId": self.sender_id,
            "senderName": self.sender_name, "senderRole": self.sender_role,
            "content": self.content, "messageType": self.message_type, "voiceUrl": self.voice_url,
            "isOfflineMessage": self.is_offline_message, "readBy": self.read_by or [],
            "createdAt": _iso(self.created_at),
        }


class MedicalRecord(db.Model):
    """Patient health summary, either general or tied to one emergency."""
    __tablename__ = 'medical_record'
    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    # Author: the patient for self-reported records, otherwise the treating doctor
    doctor_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    emergency_id = db.Column(db.Integer, db.ForeignKey('emergency_request.id'), nullable=True, index=True)

    title = db.Column(db.String(200), nullable=True)
    blood_type = db.Column(db.String(3), nullable=True)
    medications = db.Column(db.JSON, nullable=False, default=list)
    allergies = db.Column(db.JSON, nullable=False, default=list)
    chronic_conditions = db.Column(db.Text, nullable=True)
    diagnosis = db.Column(db.String(500), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(30), nullable=False, default="active")

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    patient = db.relationship('User', foreign_keys=[patient_id])
    doctor = db.relationship('User', foreign_keys=[doctor_id])

    def to_dict(self):
        return {
            "id": self.id, "patientId": self.patient_id, "emergencyId": self.emergency_id,
            "doctor": {"id": self.doctor.id, "name": self.doctor.name,
                       "specialization": self.doctor.specialization} if self.doctor else None,
            "title": self.title, "bloodType": self.blood_type,
            "medications": self.medications or [], "allergies": self.allergies or [],
            "chronicConditions": self.chronic_conditions, "diagnosis": self.diagnosis,
            "notes": self.notes, "status": self.status,
            "createdAt": _iso(self.created_at), "updatedAt": _iso(self.updated_at),
        }
