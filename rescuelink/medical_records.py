import logging

from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required

from .auth import current_user
from .errors import ApiError, Forbidden, NotFound
from .extensions import db
from .models import EmergencyRequest, MedicalRecord, BLOOD_TYPES, RECORD_STATUSES

logger = logging.getLogger(__name__)

medical_records_bp = Blueprint('medical_records', __name__, url_prefix='/api/medical-records')


def _string_list(value):
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def _apply_fields(record, data):
    blood_type = data.get('bloodType')
    if blood_type and blood_type not in BLOOD_TYPES:
        raise ApiError(f"bloodType must be one of: {', '.join(BLOOD_TYPES)}")
    status = data.get('status')
    if status and status not in RECORD_STATUSES:
        raise ApiError(f"status must be one of: {', '.join(RECORD_STATUSES)}")

    record.title = data.get('title') or record.title
    record.blood_type = blood_type or record.blood_type
    record.chronic_conditions = data.get('chronicConditions') or record.chronic_conditions
    record.notes = data.get('notes') or record.notes
    record.status = status or record.status or 'active'
    if 'diagnosis' in data:
        record.diagnosis = data.get('diagnosis') or None
    # Lists that are sent replace the stored ones wholesale
    if 'medications' in data:
        record.medications = _string_list(data.get('medications'))
    if 'allergies' in data:
        record.allergies = _string_list(data.get('allergies'))


def treats_patient(doctor, patient_id):
    """True when the doctor is assigned to any emergency of the patient."""
    return EmergencyRequest.query.filter_by(patient_id=patient_id, assigned_doctor_id=doctor.id).first() is not None


def _can_read_patient(user, patient_id):
    if user.role == 'admin' or user.id == patient_id:
        return True
    return user.role == 'doctor' and treats_patient(user, patient_id)


def get_record_or_404(record_id):
    record = db.session.get(MedicalRecord, record_id)
    if record is None:
        raise NotFound("Medical record not found")
    return record


@medical_records_bp.route('', methods=['POST'])
@jwt_required()
def save_general_record():
    """Creates or updates the caller's general (not emergency-bound) record."""
    user = current_user()
    data = request.get_json(silent=True) or {}
    record = MedicalRecord.query.filter_by(patient_id=user.id, emergency_id=None).first()
    if record is None:
        record = MedicalRecord(patient_id=user.id, doctor_id=user.id)
    _apply_fields(record, data)
    db.session.add(record)
    db.session.commit()
    logger.info("Medical record %s saved for user %s", record.id, user.id)
    return jsonify({"success": True, "message": "Medical record saved successfully",
                    "data": record.to_dict()}), 201


@medical_records_bp.route('/<int:record_id>', methods=['PUT'])
@jwt_required()
def update_record(record_id):
    user = current_user()
    record = get_record_or_404(record_id)
    if user.role != 'admin' and user.id != record.patient_id:
        raise Forbidden("Access denied")
    _apply_fields(record, request.get_json(silent=True) or {})
    db.session.commit()
    return jsonify({"success": True, "message": "Medical record updated successfully",
                    "data": record.to_dict()}), 200


@medical_records_bp.route('/my-records', methods=['GET'])
@jwt_required()
def get_my_records():
    return _records_for(current_user(), None)


@medical_records_bp.route('/user/<int:user_id>', methods=['GET'])
@jwt_required()
def get_patient_records(user_id):
    return _records_for(current_user(), user_id)


def _records_for(user, patient_id):
    patient_id = patient_id if patient_id is not None else user.id
    if not _can_read_patient(user, patient_id):
        raise Forbidden("Access denied. Only the treating doctor can view patient records.")
    records = (MedicalRecord.query.filter_by(patient_id=patient_id)
               .order_by(MedicalRecord.created_at.desc(), MedicalRecord.id.desc()).all())
    return jsonify({"success": True, "count": len(records), "data": [r.to_dict() for r in records]}), 200


@medical_records_bp.route('/<int:record_id>', methods=['GET'])
@jwt_required()
def get_record(record_id):
    user = current_user()
    record = get_record_or_404(record_id)
    if user.id != record.doctor_id and not _can_read_patient(user, record.patient_id):
        raise Forbidden("Access denied")
    return jsonify({"success": True, "data": record.to_dict()}), 200
