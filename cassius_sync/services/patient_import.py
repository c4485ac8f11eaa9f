"""
CSV patient import: parsing, normalisation, matching against existing
patients and the writes of phase 2.
"""

from datetime import date
from typing import List, Dict, Optional, Tuple, NamedTuple
from sqlalchemy import func
import csv
import io
import logging
import re
import unicodedata

from cassius_sync.database.models import Patient, utcnow
from cassius_sync.errors import UnreadableFileError
from cassius_sync.models.imports import ValidationSample
from .import_pipeline import ImportPipeline

logger = logging.getLogger(__name__)

PATIENT_FIELDS = (
    'file_number', 'ssn', 'nom', 'prenom', 'date_naissance', 'sexe', 'telephone',
    'email', 'address_full', 'code_postal', 'ville', 'pays'
)
REQUIRED_FIELDS = ('nom', 'prenom', 'date_naissance')

FIELD_LABELS = {
    'file_number': 'N° Dossier',
    'ssn': 'Numéro SS',
    'nom': 'Nom',
    'prenom': 'Prénom',
    'date_naissance': 'Date de naissance',
    'sexe': 'Sexe',
    'telephone': 'Téléphone',
    'email': 'Email',
    'address_full': 'Adresse',
    'code_postal': 'Code postal',
    'ville': 'Ville',
    'pays': 'Pays'
}

# Keys are headers lower-cased with accents and punctuation removed
HEADER_ALIASES = {
    'numerodedossier': 'file_number', 'ndossier': 'file_number', 'dossier': 'file_number',
    'filenumber': 'file_number',
    'numeross': 'ssn', 'nss': 'ssn', 'ssn': 'ssn', 'nationalid': 'ssn', 'numerosecu': 'ssn',
    'nom': 'nom', 'lastname': 'nom', 'name': 'nom', 'nomdefamille': 'nom',
    'prenom': 'prenom', 'firstname': 'prenom',
    'datedenaissance': 'date_naissance', 'datenaissance': 'date_naissance',
    'dateofbirth': 'date_naissance', 'birthdate': 'date_naissance', 'dob': 'date_naissance',
    'sexe': 'sexe', 'sex': 'sexe', 'gender': 'sexe',
    'telephone': 'telephone', 'tel': 'telephone', 'phone': 'telephone', 'portable': 'telephone',
    'email': 'email', 'mail': 'email', 'courriel': 'email',
    'adresse': 'address_full', 'address': 'address_full',
    'codepostal': 'code_postal', 'cp': 'code_postal', 'postalcode': 'code_postal', 'zip': 'code_postal',
    'ville': 'ville', 'city': 'ville',
    'pays': 'pays', 'country': 'pays'
}

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
DMY_RE = re.compile(r'^(\d{1,2})[/.-](\d{1,2})[/.-](\d{2}|\d{4})$')
ISO_RE = re.compile(r'^(\d{4})-(\d{1,2})-(\d{1,2})$')
POSTAL_CODE_RE = re.compile(r'\b(\d{5})\b')
STRIP_RE = re.compile(r'[\s.\-]')

SEX_VALUES = {
    'M': 'HOMME', 'H': 'HOMME', 'HOMME': 'HOMME', 'MASCULIN': 'HOMME', 'MALE': 'HOMME',
    'F': 'FEMME', 'FEMME': 'FEMME', 'FEMININ': 'FEMME', 'FEMALE': 'FEMME'
}

TEMPLATE_ROWS = [
    ['N° Dossier', 'Nom', 'Prénom', 'Date de naissance', 'Sexe', 'Téléphone', 'Email',
     'Adresse', 'Code postal', 'Ville', 'Pays', 'Numéro SS'],
    ['D-0001', 'Dupont', 'Marie', '14/02/1975', 'F', '06 12 34 56 78', 'marie.dupont@example.fr',
     '12 rue de la Paix, 75002 Paris', '75002', 'Paris', 'France', '2 75 02 75 123 456 78'],
]


def strip_accents(value: str) -> str:
    return ''.join(c for c in unicodedata.normalize('NFKD', value) if not unicodedata.combining(c))


def header_key(header: str) -> str:
    return re.sub(r'[^a-z0-9]', '', strip_accents(header.replace('\ufeff', '')).lower())


def parse_date(value: str, today: Optional[date] = None) -> Tuple[Optional[date], Optional[str]]:
    """Parse a birth date; returns (date, warning).

    dd/mm/yyyy (with /, - or . separators) and yyyy-mm-dd are accepted. A
    value that only makes sense as mm/dd, or a two-digit year, is accepted
    with a warning.
    """
    value = value.strip()
    today = today or date.today()

    match = ISO_RE.match(value)
    if match:
        year, month, day = (int(p) for p in match.groups())
        try:
            return date(year, month, day), None
        except ValueError:
            return None, None

    match = DMY_RE.match(value)
    if not match:
        return None, None
    first, second, year_text = match.groups()
    first, second, year = int(first), int(second), int(year_text)

    warning = None
    if len(year_text) == 2:
        year += 2000 if year <= today.year % 100 else 1900
        warning = f"Année sur deux chiffres, interprétée comme {year}"

    try:
        return date(year, second, first), warning
    except ValueError:
        pass
    try:
        parsed = date(year, first, second)
    except ValueError:
        return None, None
    return parsed, "Date ambiguë, interprétée au format mm/jj/aaaa"


def parse_sexe(value: str) -> Optional[str]:
    return SEX_VALUES.get(strip_accents(value.strip()).upper())


def normalize_email(value: str) -> Optional[str]:
    value = value.strip().lower()
    return value if EMAIL_RE.match(value) else None


def strip_separators(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return STRIP_RE.sub('', value) or None


def extract_address_parts(address: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Postal code and city from a free-form French address"""
    if not address:
        return None, None
    match = POSTAL_CODE_RE.search(address)
    if not match:
        return None, None
    after = address[match.end():].strip()
    city = re.split(r'[,\n]', after)[0].strip() if after else ''
    return match.group(1), city or None


class CsvRow(NamedTuple):
    line: int
    raw: Dict[str, str]
    fields: Dict[str, str]
    missing_columns: Tuple[str, ...]


def read_csv(content: str) -> List[CsvRow]:
    """Split CSV content into rows; raises UnreadableFileError when nothing usable is found"""
    content = (content or '').lstrip('\ufeff')
    if not content.strip():
        raise UnreadableFileError("Le fichier est vide")

    header_line = next(line for line in content.splitlines() if line.strip())
    delimiter = ';' if ';' in header_line else ','

    try:
        reader = csv.reader(io.StringIO(content), delimiter=delimiter)
        header = None
        rows = []
        for values in reader:
            if not any(v.strip() for v in values):
                continue
            if header is None:
                header = [v.strip() for v in values]
                columns = {h: HEADER_ALIASES.get(header_key(h)) for h in header}
                present = set(columns.values())
                missing = tuple(f for f in REQUIRED_FIELDS if f not in present)
                continue
            raw = {h: (values[i].strip() if i < len(values) else '') for i, h in enumerate(header)}
            fields = {}
            for h, value in raw.items():
                field = columns.get(h)
                if field and value and field not in fields:
                    fields[field] = value
            rows.append(CsvRow(reader.line_num, raw, fields, missing))
    except csv.Error as e:
        raise UnreadableFileError(f"Fichier CSV illisible: {e}") from e

    if not header or not any(header):
        raise UnreadableFileError("En-tête CSV introuvable")
    if not rows:
        raise UnreadableFileError("Le fichier ne contient aucune ligne de données")
    return rows


def render_template() -> str:
    output = io.StringIO()
    writer = csv.writer(output, delimiter=';')
    writer.writerows(TEMPLATE_ROWS)
    return output.getvalue()


class PatientImportPipeline(ImportPipeline):
    kind = 'patients_csv'

    def parse(self, content: str) -> List[CsvRow]:
        return read_csv(content)

    def normalize(self, row: CsvRow) -> ValidationSample:
        """Field-level validation of one row, no database access"""
        sample = ValidationSample(row=row.line, raw=row.raw)
        fields = row.fields

        for field in row.missing_columns:
            sample.error(field, f"Colonne requise absente: {FIELD_LABELS[field]}")

        nom = fields.get('nom', '').strip()
        prenom = fields.get('prenom', '').strip()
        if not nom and 'nom' not in row.missing_columns:
            sample.error('nom', "Nom requis")
        if not prenom and 'prenom' not in row.missing_columns:
            sample.error('prenom', "Prénom requis")

        birth_date = None
        raw_date = fields.get('date_naissance', '')
        if not raw_date:
            if 'date_naissance' not in row.missing_columns:
                sample.error('date_naissance', "Date de naissance requise")
        else:
            birth_date, warning = parse_date(raw_date)
            if birth_date is None:
                sample.error('date_naissance', "Format date invalide (attendu: jj/mm/aaaa)")
            elif birth_date > date.today():
                sample.error('date_naissance', "Date de naissance dans le futur")
            elif warning:
                sample.warn('date_naissance', warning)

        sexe = None
        if fields.get('sexe'):
            sexe = parse_sexe(fields['sexe'])
            if sexe is None:
                sample.warn('sexe', f"Sexe non reconnu ({fields['sexe']}), sera ignoré")

        email = None
        if fields.get('email'):
            email = normalize_email(fields['email'])
            if email is None:
                sample.warn('email', "Email invalide, sera ignoré")

        address = fields.get('address_full', '').strip() or None
        code_postal = fields.get('code_postal', '').strip() or None
        ville = fields.get('ville', '').strip() or None
        if address and (not code_postal or not ville):
            extracted_cp, extracted_city = extract_address_parts(address)
            code_postal = code_postal or extracted_cp
            ville = ville or extracted_city

        if sample.errors:
            return sample

        sample.data = {
            'file_number': fields.get('file_number', '').strip() or None,
            'ssn': strip_separators(fields.get('ssn')),
            'nom': nom,
            'prenom': prenom,
            'date_naissance': birth_date.isoformat(),
            'sexe': sexe,
            'telephone': strip_separators(fields.get('telephone')),
            'email': email,
            'address_full': address,
            'code_postal': code_postal,
            'ville': ville,
            'pays': fields.get('pays', '').strip() or 'France'
        }
        return sample

    def _patients(self):
        return self.session.query(Patient).filter(Patient.tenant_id == self.tenant_id)

    def _same_name(self, patient: Patient, data: Dict) -> bool:
        return (
            patient.nom.strip().lower() == data['nom'].lower()
            and patient.prenom.strip().lower() == data['prenom'].lower()
        )

    def lookup(self, data: Dict) -> Tuple[Optional[Patient], Optional[str], Optional[Patient]]:
        """Find the patient a row refers to.

        Returns (patient, match_type, clash) where clash is a differently named
        patient already holding the row's file number.
        """
        birth_date = date.fromisoformat(data['date_naissance'])

        if data.get('file_number'):
            patient = self._patients().filter(Patient.file_number == data['file_number']).first()
            if patient is not None:
                if self._same_name(patient, data):
                    return patient, 'file_number', None
                return None, None, patient

        patient = self._patients().filter(
            func.lower(Patient.nom) == func.lower(data['nom']),
            func.lower(Patient.prenom) == func.lower(data['prenom']),
            Patient.date_naissance == birth_date
        ).first()
        if patient is not None:
            return patient, 'name_dob', None
        return None, None, None

    def _changes(self, patient: Patient, data: Dict) -> Dict:
        changes = {}
        for field in PATIENT_FIELDS:
            value = data.get(field)
            if value is None:
                continue
            if field == 'date_naissance':
                value = date.fromisoformat(value)
            if getattr(patient, field) != value:
                changes[field] = value
        return changes

    def resolve_match(self, sample: ValidationSample):
        data = sample.data
        patient, match_type, clash = self.lookup(data)

        if clash is not None:
            sample.error('file_number', f"Numéro de dossier déjà attribué à {clash.full_name}")
            return

        if patient is not None:
            sample.matched_id = patient.id
            sample.match_type = match_type
            sample.action = 'update' if self._changes(patient, data) else 'skip'
            return

        sample.action = 'create'
        namesake = self._patients().filter(
            func.lower(Patient.nom) == func.lower(data['nom']),
            func.lower(Patient.prenom) == func.lower(data['prenom'])
        ).first()
        if namesake is not None:
            sample.warn('date_naissance', f"{namesake.full_name} existe avec une autre date de naissance")
        if data.get('email'):
            holder = self._patients().filter(func.lower(Patient.email) == data['email']).first()
            if holder is not None:
                sample.warn('email', f"Email déjà utilisé par {holder.full_name}")

    def validate_rows(self, rows: List[CsvRow]) -> List[ValidationSample]:
        samples = []
        seen = {}
        for row in rows:
            sample = self.normalize(row)
            if not sample.errors:
                self.resolve_match(sample)
            if sample.data and not sample.errors:
                data = sample.data
                key = data['file_number'] or (data['nom'].lower(), data['prenom'].lower(), data['date_naissance'])
                if key in seen:
                    sample.warn('nom', f"Doublon de la ligne {seen[key]} dans le fichier")
                else:
                    seen[key] = row.line
            sample.classify()
            samples.append(sample)
        return samples

    def write_row(self, sample: ValidationSample) -> str:
        data = sample.data
        patient, _, clash = self.lookup(data)
        if clash is not None:
            raise ValueError(f"Numéro de dossier {data['file_number']} déjà attribué à {clash.full_name}")

        if patient is None:
            values = {f: data.get(f) for f in PATIENT_FIELDS}
            values['date_naissance'] = date.fromisoformat(values['date_naissance'])
            patient = Patient(tenant_id=self.tenant_id, **values)
            self.session.add(patient)
            self.session.flush()
            return 'created'

        changes = self._changes(patient, data)
        if not changes:
            return 'skipped'
        for field, value in changes.items():
            setattr(patient, field, value)
        patient.updated_at = utcnow()
        self.session.flush()
        return 'updated'
