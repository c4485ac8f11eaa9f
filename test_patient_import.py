from datetime import date, timedelta

import pytest

from cassius_sync.database.models import Patient, ImportJob
from cassius_sync.errors import UnreadableFileError, StaleJobError, JobStateError
from cassius_sync.services.patient_import import (
    PatientImportPipeline, parse_date, parse_sexe, extract_address_parts, read_csv, render_template
)
from conftest import TENANT, OTHER_TENANT

TEN_ROWS = """Nom;Prénom;Date de naissance;Sexe;Téléphone;Email;N° Dossier
Dupont;Marie;14/02/1975;F;06 12 34 56 78;marie.dupont@example.fr;D-001
Martin;Paul;03/11/1968;M;;paul.martin@example.fr;D-002
Bernard;Julie;;F;;;D-003
Petit;Luc;21/07/1990;H;;;D-004
Durand;Sophie;30/01/1985;FEMME;;;D-005
Leroy;Hugo;;M;;;D-006
Moreau;Emma;15/09/2001;F;;;D-007
Simon;Louis;28/04/1959;M;;;D-008
Laurent;Chloé;2/12/1979;F;;;D-009
Michel;Jules;1980-06-17;M;;;D-010
"""


def make_pipeline(session, tenant_id=TENANT):
    return PatientImportPipeline(session, tenant_id, sample_limit=20)


def test_ten_row_scenario(session):
    pipeline = make_pipeline(session)
    job = pipeline.upload(TEN_ROWS, 'patients.csv')
    assert job.status == 'uploaded'
    assert len(job.file_hash) == 16

    validation = pipeline.validate(job.id)
    assert validation.stats.total == 10
    assert validation.stats.error == 2
    assert validation.stats.ok == 8
    assert validation.stats.warning == 0
    assert validation.stats.to_create == 8
    assert [s.row for s in validation.samples.errors] == [4, 7]

    # Validation writes no patients
    assert session.query(Patient).count() == 0

    result = pipeline.run(job.id)
    assert (result.created, result.updated, result.skipped, result.failed) == (8, 0, 0, 0)
    assert result.total == 8
    assert result.invalid == 2
    assert result.rows == 10
    assert result.consistent
    assert session.query(Patient).filter(Patient.tenant_id == TENANT).count() == 8

    report = pipeline.error_report(job.id)
    lines = report.strip().splitlines()
    assert lines[0] == 'ligne;etape;champ;message;donnees'
    assert len(lines) == 3
    assert lines[1].startswith('4;validation;date_naissance;')
    assert 'Bernard' in lines[1]
    assert lines[2].startswith('7;validation;date_naissance;')


def test_normalisation_of_written_patients(session):
    pipeline = make_pipeline(session)
    job = pipeline.upload(TEN_ROWS, 'patients.csv')
    pipeline.validate(job.id)
    pipeline.run(job.id)

    marie = session.query(Patient).filter(Patient.file_number == 'D-001').one()
    assert marie.sexe == 'FEMME'
    assert marie.telephone == '0612345678'
    assert marie.date_naissance == date(1975, 2, 14)
    assert marie.pays == 'France'

    jules = session.query(Patient).filter(Patient.file_number == 'D-010').one()
    assert jules.date_naissance == date(1980, 6, 17)
    assert jules.sexe == 'HOMME'


def test_reimport_of_same_file_is_fully_skipped(session):
    pipeline = make_pipeline(session)
    first = pipeline.upload(TEN_ROWS, 'patients.csv')
    pipeline.validate(first.id)
    pipeline.run(first.id)

    second = pipeline.upload(TEN_ROWS, 'patients.csv')
    validation = pipeline.validate(second.id)
    assert validation.stats.to_create == 0
    assert validation.stats.to_update == 0

    result = pipeline.run(second.id)
    assert result.created == 0
    assert result.skipped == 8
    assert result.consistent
    assert session.query(Patient).count() == 8


def test_changed_row_updates_matched_patient(session):
    pipeline = make_pipeline(session)
    first = pipeline.upload(TEN_ROWS, 'patients.csv')
    pipeline.validate(first.id)
    pipeline.run(first.id)

    changed = TEN_ROWS.replace('marie.dupont@example.fr', 'marie@cabinet.fr')
    second = pipeline.upload(changed, 'patients.csv')
    validation = pipeline.validate(second.id)
    assert validation.stats.to_update == 1

    result = pipeline.run(second.id)
    assert (result.created, result.updated, result.skipped) == (0, 1, 7)
    marie = session.query(Patient).filter(Patient.file_number == 'D-001').one()
    assert marie.email == 'marie@cabinet.fr'


def test_stale_job_is_rejected_without_writes(session, db_manager):
    pipeline = make_pipeline(session)
    job = pipeline.upload(TEN_ROWS, 'patients.csv')
    pipeline.validate(job.id)

    with db_manager.get_session() as other:
        stored = other.get(ImportJob, job.id)
        stored.content = TEN_ROWS + "Nouveau;Patient;01/01/1990;M;;;D-011\n"
        other.commit()
    session.expire_all()

    with pytest.raises(StaleJobError):
        pipeline.run(job.id)
    assert session.query(Patient).count() == 0
    assert pipeline.get_job(job.id).status == 'validated'


def test_run_requires_validation(session):
    pipeline = make_pipeline(session)
    job = pipeline.upload(TEN_ROWS, 'patients.csv')
    with pytest.raises(JobStateError):
        pipeline.run(job.id)


def test_second_run_is_rejected(session):
    pipeline = make_pipeline(session)
    job = pipeline.upload(TEN_ROWS, 'patients.csv')
    pipeline.validate(job.id)
    pipeline.run(job.id)

    with pytest.raises(JobStateError):
        pipeline.run(job.id)
    assert session.query(Patient).count() == 8


def test_concurrent_run_loses_the_status_race(session, db_manager):
    pipeline = make_pipeline(session)
    job = pipeline.upload(TEN_ROWS, 'patients.csv')
    pipeline.validate(job.id)

    # Another request claimed the job; this session still sees it as validated
    with db_manager.get_session() as other:
        other.get(ImportJob, job.id).status = 'running'
        other.commit()

    with pytest.raises(JobStateError):
        pipeline.run(job.id)
    assert session.query(Patient).count() == 0


def test_row_write_failure_does_not_abort_batch(session):
    class FlakyPipeline(PatientImportPipeline):
        def write_row(self, sample):
            if sample.data['nom'] == 'Petit':
                raise ValueError("constraint violated")
            return super().write_row(sample)

    pipeline = FlakyPipeline(session, TENANT)
    job = pipeline.upload(TEN_ROWS, 'patients.csv')
    pipeline.validate(job.id)
    result = pipeline.run(job.id)

    assert result.created == 7
    assert result.failed == 1
    assert result.total == 8
    assert result.consistent
    assert result.failures[0].row == 5
    assert session.query(Patient).filter(Patient.nom == 'Petit').count() == 0

    report = pipeline.error_report(job.id)
    assert '5;import;;constraint violated;' in report


def test_error_report_lists_write_failure_once(session):
    content = (
        "Nom;Prénom;Date de naissance;N° Dossier\n"
        "Dupont;Marie;14/02/1975;D-001\n"
        "Martin;Paul;03/11/1968;D-001\n"
    )
    pipeline = make_pipeline(session)
    job = pipeline.upload(content, 'patients.csv')
    pipeline.validate(job.id)
    result = pipeline.run(job.id)

    assert result.created == 1
    assert result.failed == 1
    assert result.failures[0].row == 3

    lines = pipeline.error_report(job.id).splitlines()
    assert len(lines) == 2
    assert lines[1].startswith('3;import;')


def test_missing_required_column_makes_every_row_error(session):
    content = "Nom,Prénom,Email\nDupont,Marie,marie@example.fr\nMartin,Paul,\n"
    validation = make_pipeline(session).preview(content)
    assert validation.stats.total == 2
    assert validation.stats.error == 2
    issue = validation.samples.errors[0].errors[0]
    assert issue.field == 'date_naissance'


def test_unreadable_files():
    with pytest.raises(UnreadableFileError):
        read_csv('')
    with pytest.raises(UnreadableFileError):
        read_csv('\ufeff  \n')
    with pytest.raises(UnreadableFileError):
        read_csv('Nom;Prénom;Date de naissance\n')


def test_header_aliases_and_delimiter():
    rows = read_csv('\ufeffLAST NAME,first_name,DOB,Gender,Unused\nDupont,Marie,1975-02-14,f,x\n')
    assert rows[0].fields == {
        'nom': 'Dupont', 'prenom': 'Marie', 'date_naissance': '1975-02-14', 'sexe': 'f'
    }
    assert rows[0].missing_columns == ()

    rows = read_csv('nom;prénom;date_naissance\n"Dupont; Martin";Marie;14/02/1975\n')
    assert rows[0].fields['nom'] == 'Dupont; Martin'


def test_soft_issues_are_warnings(session):
    content = (
        "Nom;Prénom;Date de naissance;Sexe;Email\n"
        "Dupont;Marie;12/25/1975;X;pas-un-email\n"
    )
    validation = make_pipeline(session).preview(content)
    assert validation.stats.warning == 1
    sample = validation.samples.warnings[0]
    assert {w.field for w in sample.warnings} == {'date_naissance', 'sexe', 'email'}
    assert sample.data['email'] is None
    assert sample.data['sexe'] is None
    assert sample.data['date_naissance'] == '1975-12-25'


def test_future_birth_date_is_error(session):
    future = (date.today() + timedelta(days=30)).strftime('%d/%m/%Y')
    content = f"Nom;Prénom;Date de naissance\nDupont;Marie;{future}\n"
    validation = make_pipeline(session).preview(content)
    assert validation.stats.error == 1


def test_duplicate_row_in_file_is_warning(session):
    content = (
        "Nom;Prénom;Date de naissance;N° Dossier\n"
        "Dupont;Marie;14/02/1975;D-001\n"
        "Dupont;Marie;14/02/1975;D-001\n"
    )
    validation = make_pipeline(session).preview(content)
    assert validation.stats.ok == 1
    assert validation.stats.warning == 1
    assert 'ligne 2' in validation.samples.warnings[0].warnings[0].message


def test_file_number_held_by_other_patient_is_error(session):
    session.add(Patient(tenant_id=TENANT, nom='Martin', prenom='Paul', date_naissance=date(1968, 11, 3),
                        file_number='D-001'))
    session.commit()

    content = "Nom;Prénom;Date de naissance;N° Dossier\nDupont;Marie;14/02/1975;D-001\n"
    validation = make_pipeline(session).preview(content)
    assert validation.stats.error == 1
    assert validation.samples.errors[0].errors[0].field == 'file_number'


def test_namesake_with_other_birth_date_is_created_with_warning(session):
    session.add(Patient(tenant_id=TENANT, nom='Dupont', prenom='Marie', date_naissance=date(1980, 1, 1)))
    session.commit()

    content = "Nom;Prénom;Date de naissance\nDupont;Marie;14/02/1975\n"
    pipeline = make_pipeline(session)
    job = pipeline.upload(content, 'p.csv')
    validation = pipeline.validate(job.id)
    assert validation.stats.warning == 1
    assert validation.stats.to_create == 1

    result = pipeline.run(job.id)
    assert result.created == 1
    assert session.query(Patient).filter(Patient.nom == 'Dupont').count() == 2


def test_matching_is_tenant_scoped(session):
    session.add(Patient(tenant_id=OTHER_TENANT, nom='Dupont', prenom='Marie', date_naissance=date(1975, 2, 14),
                        file_number='D-001'))
    session.commit()

    validation = make_pipeline(session).preview(TEN_ROWS)
    assert validation.stats.to_create == 8
    assert validation.stats.error == 2


def test_parse_date_formats():
    today = date(2025, 1, 1)
    assert parse_date('14/02/1975', today) == (date(1975, 2, 14), None)
    assert parse_date('14-02-1975', today) == (date(1975, 2, 14), None)
    assert parse_date('14.02.1975', today) == (date(1975, 2, 14), None)
    assert parse_date('1975-02-14', today) == (date(1975, 2, 14), None)

    parsed, warning = parse_date('12/25/1975', today)
    assert parsed == date(1975, 12, 25)
    assert warning

    parsed, warning = parse_date('14/02/75', today)
    assert parsed == date(1975, 2, 14)
    assert warning

    assert parse_date('31/02/1975', today) == (None, None)
    assert parse_date('hier', today) == (None, None)


def test_field_normalisers():
    assert parse_sexe('h') == 'HOMME'
    assert parse_sexe('Féminin') == 'FEMME'
    assert parse_sexe('?') is None
    assert extract_address_parts('12 rue de la Paix, 75002 Paris, France') == ('75002', 'Paris')
    assert extract_address_parts('Lieu-dit sans code') == (None, None)


def test_template_is_importable():
    rows = read_csv(render_template())
    assert len(rows) == 1
    assert rows[0].missing_columns == ()
    assert rows[0].fields['file_number'] == 'D-0001'
