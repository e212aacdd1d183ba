import logging
import os
from datetime import date

from flask import Blueprint, request, jsonify, current_app, send_file, url_for
from flask_jwt_extended import jwt_required
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import cm
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from .auth import current_user, role_required
from .errors import ApiError, Forbidden, NotFound
from .extensions import db
from .models import Order, Prescription, EmergencyRequest
from .orders import get_order_or_404
from .pricing import PRESCRIPTION
from .realtime import push_to_emergency, push_to_users

logger = logging.getLogger(__name__)

prescriptions_bp = Blueprint('prescriptions', __name__, url_prefix='/api/prescriptions')

REQUIRED_MEDICINE_FIELDS = ('name', 'dose', 'duration')


# ------------------------------------------------------------------
# PDF rendering
# ------------------------------------------------------------------
def render_prescription_pdf(prescription, emergency, pdf_path):
    """Writes an A4 prescription sheet for the issuing doctor and patient."""
    width, height = A4
    c = canvas.Canvas(pdf_path, pagesize=A4)
    y = height - 2 * cm

    def line(text, font="Helvetica", size=11, indent=0):
        nonlocal y
        for chunk in simpleSplit(text, font, size, width - 4 * cm - indent):
            if y < 3 * cm:
                c.showPage()
                y = height - 2 * cm
            c.setFont(font, size)
            c.drawString(2 * cm + indent, y, chunk)
            y -= size + 5

    def gap(points=8):
        nonlocal y
        y -= points

    doctor, patient = emergency.assigned_doctor, emergency.patient
    line("Detailed Prescription", "Helvetica-Bold", 18)
    line(f"Date: {prescription.created_at:%Y-%m-%d}", size=9)
    gap()

    line("Doctor Information", "Helvetica-Bold", 13)
    line(f"Name: {doctor.name}")
    if doctor.specialization:
        line(f"Specialization: {doctor.specialization}")
    if doctor.experience:
        line(f"Experience: {doctor.experience} years")
    gap()

    line("Patient Information", "Helvetica-Bold", 13)
    line(f"Name: {patient.name}")
    gap()

    line("Medicines", "Helvetica-Bold", 13)
    for index, med in enumerate(prescription.medicines, start=1):
        gap(4)
        line(f"{index}. {med['name']}", "Helvetica-Bold")
        line(f"Dose: {med['dose']}", indent=12)
        line(f"Duration: {med['duration']}", indent=12)
        if med.get('instructions'):
            line(f"Instructions: {med['instructions']}", indent=12)

    if prescription.notes:
        gap()
        line("Notes", "Helvetica-Bold", 13)
        line(prescription.notes)
    if prescription.follow_up_date:
        gap()
        line(f"Follow-Up Date: {prescription.follow_up_date:%Y-%m-%d}")

    c.setFont("Helvetica", 10)
    c.drawString(2 * cm, 2 * cm, "Signature ______________________")
    c.showPage()
    c.save()


def _download_url(prescription):
    return url_for('prescriptions.download_pdf', prescription_id=prescription.id, _external=True)


def _prescription_body(prescription):
    body = prescription.to_dict()
    body['downloadUrl'] = _download_url(prescription) if prescription.pdf_path else None
    return body


def _clean_medicines(medicines):
    if not isinstance(medicines, list) or not medicines:
        raise ApiError("At least one medicine is required")
    cleaned = []
    for med in medicines:
        if not isinstance(med, dict):
            raise ApiError("Each medicine needs name, dose, and duration")
        values = {k: str(med.get(k) or '').strip() for k in REQUIRED_MEDICINE_FIELDS}
        if not all(values.values()):
            raise ApiError("Each medicine needs name, dose, and duration")
        instructions = str(med.get('instructions') or '').strip()
        if instructions:
            values['instructions'] = instructions
        cleaned.append(values)
    return cleaned


def _parse_follow_up(value):
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ApiError("followUpDate must be an ISO date (YYYY-MM-DD)")


def find_prescription_order(emergency):
    """The live prescription order for the currently assigned doctor, if any.

    Orders created before the current assignment belong to an earlier
    consultation and are ignored.
    """
    if not emergency.assigned_doctor_id:
        return None
    query = Order.query.filter(
        Order.emergency_id == emergency.id,
        Order.patient_id == emergency.patient_id,
        Order.doctor_id == emergency.assigned_doctor_id,
        Order.service_type == PRESCRIPTION,
        Order.status != 'cancelled',
    )
    if emergency.assigned_at is not None:
        query = query.filter(Order.created_at >= emergency.assigned_at)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).first()


# ------------------------------------------------------------------
# Routes
# ------------------------------------------------------------------
@prescriptions_bp.route('/emergency/<int:emergency_id>', methods=['GET'])
@jwt_required()
def get_prescription_context(emergency_id):
    """Doctor, patient, payment order and issued prescription for an emergency."""
    user = current_user()
    emergency = db.session.get(EmergencyRequest, emergency_id)
    if emergency is None:
        raise NotFound("Emergency request not found")
    if user.role != 'admin' and user.id not in (emergency.patient_id, emergency.assigned_doctor_id):
        raise Forbidden("Not authorized to view this prescription context")

    order = find_prescription_order(emergency)
    prescription = order.prescription if order is not None else None
    doctor = emergency.assigned_doctor

    return jsonify({"success": True, "data": {
        "doctor": doctor.to_dict() if doctor else None,
        "patient": emergency.patient.to_dict(),
        "order": order.to_dict() if order else None,
        "prescription": _prescription_body(prescription) if prescription else None,
        # The editor opens once the patient has paid and until the prescription is issued
        "editorUnlocked": order is not None and order.status == 'paid' and prescription is None,
        "paymentRequired": doctor is not None and order is None,
    }}), 200


@prescriptions_bp.route('', methods=['POST'])
@role_required('doctor')
def issue_prescription():
    doctor = current_user()
    data = request.get_json(silent=True) or {}
    emergency_id, order_id = data.get('emergencyId'), data.get('orderId')
    if not emergency_id or not order_id:
        raise ApiError("emergencyId and orderId are required")
    medicines = _clean_medicines(data.get('medicines'))
    follow_up = _parse_follow_up(data.get('followUpDate'))

    order = get_order_or_404(order_id)
    if order.prescription is not None:
        raise ApiError("A prescription has already been issued for this order")
    if order.service_type != PRESCRIPTION or order.status != 'paid':
        raise ApiError("Prescription order must be paid before issuing")
    if order.doctor_id != doctor.id:
        raise Forbidden("You are not the assigned doctor for this order")

    emergency = db.session.get(EmergencyRequest, emergency_id)
    if emergency is None:
        raise NotFound("Emergency request not found")
    if (emergency.assigned_doctor_id != doctor.id or emergency.patient_id != order.patient_id
            or order.emergency_id != emergency.id):
        raise ApiError("Emergency, patient, and order information do not match")

    prescription = Prescription(order=order, patient_id=order.patient_id, doctor_id=doctor.id,
                                emergency_id=emergency.id, medicines=medicines,
                                notes=(data.get('notes') or '').strip() or None, follow_up_date=follow_up)
    db.session.add(prescription)
    db.session.flush()

    pdf_dir = current_app.config['PRESCRIPTION_DIR']
    os.makedirs(pdf_dir, exist_ok=True)
    pdf_path = os.path.join(pdf_dir, f"prescription-{prescription.id}.pdf")
    render_prescription_pdf(prescription, emergency, pdf_path)

    prescription.pdf_path = pdf_path
    order.status = 'completed'
    db.session.commit()
    logger.info("Prescription %s issued for order %s (emergency %s)", prescription.id, order.order_id, emergency.id)

    payload = {'emergencyId': emergency.id, 'prescriptionId': prescription.id, 'orderId': order.order_id,
               'doctorId': doctor.id, 'patientId': order.patient_id}
    push_to_emergency(emergency.id, 'prescriptionIssued', payload)
    push_to_users('prescriptionIssued', payload, order.patient_id)
    return jsonify({"success": True, "data": _prescription_body(prescription)}), 201


@prescriptions_bp.route('/<int:prescription_id>/pdf', methods=['GET'])
@jwt_required()
def download_pdf(prescription_id):
    user = current_user()
    prescription = db.session.get(Prescription, prescription_id)
    if prescription is None:
        raise NotFound("Prescription not found")
    if user.role != 'admin' and user.id not in (prescription.patient_id, prescription.doctor_id):
        raise Forbidden("Not authorized to download this prescription")
    if not prescription.pdf_path or not os.path.exists(prescription.pdf_path):
        raise NotFound("Prescription PDF not found")
    return send_file(prescription.pdf_path, mimetype='application/pdf', as_attachment=True,
                     download_name=os.path.basename(prescription.pdf_path))
