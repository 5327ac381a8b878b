# Compliance and legal notices for electronic signatures

from typing import Dict, List
from pydantic import BaseModel


class ComplianceInfo(BaseModel):
    code: str
    jurisdiction: str
    applicable_laws: List[str]
    consent_text: str
    legal_notice: str
    footer_title: str
    footer_statement: str
    timezone: str
    timezone_label: str


COMPLIANCE_NOTICES: Dict[str, ComplianceInfo] = {
    "US": ComplianceInfo(
        code="US",
        jurisdiction="United States",
        applicable_laws=[
            "Electronic Signatures in Global and National Commerce Act (ESIGN)",
            "Uniform Electronic Transactions Act (UETA)",
        ],
        consent_text=(
            "By signing this document electronically, you consent to the use of electronic records and "
            "signatures in accordance with the ESIGN Act and UETA. You understand that your electronic "
            "signature has the same legal effect as a handwritten signature."
        ),
        legal_notice=(
            "This document has been electronically signed in compliance with applicable federal and state "
            "laws. Electronic signatures are legally binding and enforceable."
        ),
        footer_title="Digital Signature Certificate - ESIGN Compliance",
        footer_statement="Executed under the ESIGN Act and UETA",
        timezone="UTC",
        timezone_label="UTC",
    ),
    "EU": ComplianceInfo(
        code="EU",
        jurisdiction="European Union",
        applicable_laws=[
            "eIDAS Regulation (EU) 910/2014",
            "General Data Protection Regulation (GDPR)",
        ],
        consent_text=(
            "By signing this document electronically, you consent to the use of electronic records and "
            "signatures in accordance with the eIDAS Regulation (EU) 910/2014. You understand that your "
            "electronic signature has the same legal effect as a handwritten signature under EU law."
        ),
        legal_notice=(
            "This document has been electronically signed in compliance with the eIDAS Regulation and "
            "applicable EU member state laws."
        ),
        footer_title="Digital Signature Certificate - eIDAS Compliance",
        footer_statement="Executed under eIDAS Regulation (EU) 910/2014",
        timezone="Europe/Brussels",
        timezone_label="CET",
    ),
    "IN": ComplianceInfo(
        code="IN",
        jurisdiction="India",
        applicable_laws=[
            "Information Technology Act, 2000",
            "Information Technology (Certifying Authorities) Rules, 2000",
        ],
        consent_text=(
            "By signing this document electronically, you consent to the use of electronic records and "
            "signatures in accordance with the Information Technology Act, 2000. You understand that your "
            "electronic signature has the same legal effect as a handwritten signature under Indian law."
        ),
        legal_notice=(
            "This document has been electronically signed in compliance with the Information Technology "
            "Act, 2000 and applicable Indian laws."
        ),
        footer_title="Digital Signature Certificate - India Compliance",
        footer_statement="Verified under Information Technology Act, 2000",
        timezone="Asia/Kolkata",
        timezone_label="IST",
    ),
}


def get_compliance_info(jurisdiction: str = "US") -> ComplianceInfo:
    return COMPLIANCE_NOTICES.get((jurisdiction or "").upper(), COMPLIANCE_NOTICES["US"])
