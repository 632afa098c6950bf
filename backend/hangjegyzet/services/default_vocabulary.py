"""Default business vocabulary seeded for new organizations"""
from typing import Dict, List

from hangjegyzet.models.models import TermCategory

C = TermCategory

DEFAULT_TERMS: Dict[str, Dict[TermCategory, List[dict]]] = {
    "hu": {
        C.GENERAL: [
            {"term": "üzlet", "variations": ["üzleti", "üzletek"], "context_hints": ["megállapodás", "tárgyalás"]},
            {"term": "vállalat", "variations": ["vállalati", "vállalatok"], "context_hints": ["cég", "szervezet"]},
            {"term": "szerződés", "variations": ["szerződések"], "context_hints": ["megállapodás", "feltételek"]},
            {"term": "ügyfél", "variations": ["ügyfelek"], "context_hints": ["vásárló", "partner"]},
            {"term": "projekt", "variations": ["projektek"], "context_hints": ["feladat", "munka"]},
        ],
        C.FINANCE: [
            {"term": "számla", "variations": ["számlák", "számlázás"], "context_hints": ["fizetés", "díj"]},
            {"term": "árbevétel", "variations": ["árbevételek"], "context_hints": ["bevétel", "forgalom"]},
            {"term": "költségvetés", "variations": ["költségvetési"], "context_hints": ["büdzsé", "terv"]},
            {"term": "likviditás", "variations": ["likvid"], "context_hints": ["pénzügyi", "cash flow"]},
            {"term": "amortizáció", "variations": ["amortizációs"], "context_hints": ["értékcsökkenés", "leírás"]},
        ],
        C.IT: [
            {"term": "szoftver", "variations": ["szoftverek"], "context_hints": ["program", "alkalmazás"]},
            {"term": "adatbázis", "variations": ["adatbázisok"], "context_hints": ["database", "SQL"]},
            {"term": "felhő", "variations": ["felhőalapú"], "context_hints": ["szolgáltatás", "tárhely"]},
            {"term": "algoritmus", "variations": ["algoritmusok"], "context_hints": ["program", "megoldás"]},
        ],
        C.LEGAL: [
            {"term": "jogszabály", "variations": ["jogszabályok"], "context_hints": ["törvény", "rendelet"]},
            {"term": "bíróság", "variations": ["bírósági"], "context_hints": ["ítélet", "per"]},
            {"term": "szabályzat", "variations": ["szabályzatok"], "context_hints": ["előírás", "policy"]},
        ],
        C.MEDICAL: [
            {"term": "diagnózis", "variations": ["diagnózisok"], "context_hints": ["betegség", "vizsgálat"]},
            {"term": "terápia", "variations": ["terápiák"], "context_hints": ["kezelés", "gyógyítás"]},
        ],
        C.MARKETING: [
            {"term": "kampány", "variations": ["kampányok"], "context_hints": ["hirdetés", "promóció"]},
            {"term": "célcsoport", "variations": ["célcsoportok"], "context_hints": ["vásárló", "szegmens"]},
        ],
        C.HR: [
            {"term": "munkavállaló", "variations": ["munkavállalók"], "context_hints": ["alkalmazott", "dolgozó"]},
            {"term": "toborzás", "variations": ["toborzási"], "context_hints": ["felvétel", "recruitment"]},
        ],
        C.MANUFACTURING: [
            {"term": "gyártás", "variations": ["gyártási"], "context_hints": ["termelés", "előállítás"]},
            {"term": "beszállító", "variations": ["beszállítók"], "context_hints": ["partner", "supplier"]},
        ],
        C.REAL_ESTATE: [
            {"term": "ingatlan", "variations": ["ingatlanok"], "context_hints": ["épület", "telek"]},
            {"term": "értékbecslés", "variations": ["értékbecslő"], "context_hints": ["ár", "piaci érték"]},
        ],
        C.EDUCATION: [
            {"term": "tanterv", "variations": ["tantervek"], "context_hints": ["curriculum", "oktatás"]},
            {"term": "akkreditáció", "variations": ["akkreditált"], "context_hints": ["minősítés", "elismerés"]},
        ],
        C.GOVERNMENT: [
            {"term": "önkormányzat", "variations": ["önkormányzati"], "context_hints": ["helyi", "település"]},
            {"term": "pályázat", "variations": ["pályázatok"], "context_hints": ["tender", "kiírás"]},
        ],
    },
    "en": {
        C.GENERAL: [
            {"term": "stakeholder", "variations": ["stakeholders"], "context_hints": ["project", "meeting"]},
            {"term": "deliverable", "variations": ["deliverables"], "context_hints": ["deadline", "project"]},
        ],
        C.FINANCE: [
            {"term": "EBITDA", "variations": [], "context_hints": ["margin", "earnings"]},
            {"term": "accrual", "variations": ["accruals"], "context_hints": ["accounting", "invoice"]},
        ],
        C.IT: [
            {"term": "Kubernetes", "variations": [], "context_hints": ["cluster", "deploy"]},
            {"term": "PostgreSQL", "variations": ["Postgres"], "context_hints": ["database", "query"]},
        ],
    },
}
