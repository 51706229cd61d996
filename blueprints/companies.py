from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from models import Company
from helpers import get_owned_or_404, request_data
from customers import (add_note, delete_company, delete_note, delete_person, depart_person, list_companies,
                       load_person, reactivate_person, save_company, save_person, serialize_company,
                       serialize_person)

companies_bp = Blueprint('companies', __name__)


@companies_bp.route('/companies', methods=['GET', 'POST'])
@login_required
def company_list():
    """List companies or create a new one"""
    if request.method == 'POST':
        company = save_company(current_user.id, request_data())
        return jsonify(serialize_company(company, detail=True)), 201
    companies = list_companies(current_user.id, tag=request.args.get('tag'), search=request.args.get('q'))
    return jsonify({'items': [serialize_company(c) for c in companies]})


@companies_bp.route('/companies/<int:company_id>', methods=['GET', 'POST'])
@login_required
def company_detail(company_id):
    """Show or update a company"""
    if request.method == 'POST':
        company = save_company(current_user.id, request_data(), company_id=company_id)
    else:
        company = get_owned_or_404(Company, company_id, current_user.id)
    return jsonify(serialize_company(company, detail=True))


@companies_bp.route('/companies/<int:company_id>/delete', methods=['POST'])
@login_required
def company_delete(company_id):
    delete_company(current_user.id, company_id)
    return jsonify({'success': True})


@companies_bp.route('/companies/<int:company_id>/notes', methods=['POST'])
@login_required
def note_add(company_id):
    note = add_note(current_user.id, company_id, request_data())
    return jsonify({'id': note.id, 'title': note.title, 'text': note.text}), 201


@companies_bp.route('/companies/<int:company_id>/notes/<int:note_id>/delete', methods=['POST'])
@login_required
def note_delete(company_id, note_id):
    delete_note(current_user.id, company_id, note_id)
    return jsonify({'success': True})


@companies_bp.route('/companies/<int:company_id>/persons', methods=['POST'])
@login_required
def person_add(company_id):
    person = save_person(current_user.id, company_id, request_data())
    return jsonify(serialize_person(person)), 201


@companies_bp.route('/companies/<int:company_id>/persons/<int:person_id>', methods=['GET', 'POST'])
@login_required
def person_detail(company_id, person_id):
    """Show or update a contact person"""
    if request.method == 'POST':
        person = save_person(current_user.id, company_id, request_data(), person_id=person_id)
    else:
        person = load_person(current_user.id, company_id, person_id)
    return jsonify(serialize_person(person))


@companies_bp.route('/companies/<int:company_id>/persons/<int:person_id>/delete', methods=['POST'])
@login_required
def person_delete(company_id, person_id):
    delete_person(current_user.id, company_id, person_id)
    return jsonify({'success': True})


@companies_bp.route('/companies/<int:company_id>/persons/<int:person_id>/depart', methods=['POST'])
@login_required
def person_depart(company_id, person_id):
    person = depart_person(current_user.id, company_id, person_id)
    return jsonify(serialize_person(person))


@companies_bp.route('/companies/<int:company_id>/persons/<int:person_id>/reactivate', methods=['POST'])
@login_required
def person_reactivate(company_id, person_id):
    person = reactivate_person(current_user.id, company_id, person_id)
    return jsonify(serialize_person(person))
