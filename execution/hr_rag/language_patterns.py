"""
Centralized Language Patterns for the Bilingual HR RAG Pipeline

All language-specific word lists, regex patterns, labels and prompt
templates live here, keyed by language code ("ar", "en"). Word lists are
written in their natural spelling; consumers normalize them with
ArabicTextNormalizer before comparing against normalized text.
"""

# =============================================================================
# Stop Words (for tokenization and keyword extraction)
# =============================================================================

STOP_WORDS = {
    "ar": frozenset([
        "في", "من", "إلى", "على", "عن", "مع", "كل", "بعض", "هذا", "هذه",
        "ذلك", "تلك", "التي", "الذي", "الذين", "اللذان", "اللتان", "هو", "هي",
        "هم", "هن", "أنا", "نحن", "أنت", "أنتم", "كان", "كانت", "يكون", "تكون",
        "قد", "لقد", "إن", "أن", "لن", "لم", "لا", "ما", "ماذا", "هل", "كيف",
        "متى", "أين", "لماذا", "أو", "ثم", "بل", "لكن", "حتى", "إذا", "عند",
        "بين", "بعد", "قبل", "فوق", "تحت", "نعم", "ولا", "و", "ف", "أي",
    ]),
    "en": frozenset([
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
        "it", "this", "that", "these", "those", "as", "if", "then", "so",
        "what", "how", "when", "where", "why", "which", "who", "do", "does",
        "i", "my", "me", "we", "our", "you", "your", "can", "about",
    ]),
}

# =============================================================================
# Sentiment Lexicons
# =============================================================================

SENTIMENT_WORDS = {
    "ar": {
        "positive": ["جيد", "ممتاز", "رائع", "مفيد", "مساعدة", "شكر", "شكرا", "سعيد", "راض"],
        "negative": ["سيء", "خطأ", "مشكلة", "صعوبة", "فشل", "ظلم", "تأخير", "شكوى", "غاضب"],
    },
    "en": {
        "positive": ["good", "excellent", "great", "helpful", "thank", "thanks", "happy", "satisfied"],
        "negative": ["bad", "wrong", "problem", "issue", "error", "fail", "unfair", "delay", "complaint", "angry"],
    },
}

# =============================================================================
# HR Query Categories (keyword lookup classifier)
# =============================================================================

QUERY_CATEGORIES = {
    "termination": {
        "ar": ["فصل", "إنهاء", "انهاء العقد", "طرد", "إنهاء الخدمة", "فسخ"],
        "en": ["termination", "terminate", "fired", "dismissal", "dismiss", "laid off"],
    },
    "resignation": {
        "ar": ["استقالة", "استقالتي", "أستقيل", "ترك العمل"],
        "en": ["resignation", "resign", "quit", "notice period"],
    },
    "leave": {
        "ar": ["إجازة", "الإجازة", "إجازات", "عطلة", "غياب", "إجازة سنوية", "إجازة مرضية", "أمومة"],
        "en": ["leave", "vacation", "holiday", "annual leave", "sick leave", "maternity", "absence"],
    },
    "compensation": {
        "ar": ["راتب", "رواتب", "أجر", "الأجر", "مكافأة", "مكافأة نهاية الخدمة", "بدل", "علاوة", "تعويض"],
        "en": ["salary", "wage", "pay", "bonus", "allowance", "compensation", "end of service", "gratuity"],
    },
    "working_hours": {
        "ar": ["ساعات العمل", "دوام", "عمل إضافي", "ساعات إضافية", "رمضان", "راحة"],
        "en": ["working hours", "overtime", "shift", "work hours", "ramadan", "rest day"],
    },
    "contracts": {
        "ar": ["عقد", "عقد العمل", "تجربة", "فترة التجربة", "تجديد", "محدد المدة"],
        "en": ["contract", "probation", "renewal", "fixed term", "employment agreement"],
    },
    "disciplinary": {
        "ar": ["جزاء", "عقوبة", "تأديب", "إنذار", "خصم", "مخالفة"],
        "en": ["disciplinary", "penalty", "warning", "deduction", "violation", "misconduct"],
    },
}

DEFAULT_CATEGORY = "general"

# Canned common questions per category (suggestion ranking)
COMMON_QUESTIONS = {
    "termination": {
        "ar": [
            "ما هي حالات إنهاء عقد العمل دون مكافأة؟",
            "كم مدة الإشعار عند إنهاء العقد؟",
            "ما هو التعويض عن الفصل التعسفي؟",
        ],
        "en": [
            "When can an employer terminate without end-of-service award?",
            "What notice period applies to contract termination?",
            "What compensation is due for unfair dismissal?",
        ],
    },
    "resignation": {
        "ar": ["ما هي مدة الإشعار عند الاستقالة؟", "هل أستحق مكافأة نهاية الخدمة عند الاستقالة؟"],
        "en": ["What is the notice period for resignation?", "Am I owed end-of-service pay if I resign?"],
    },
    "leave": {
        "ar": [
            "ما هي أحكام الإجازة السنوية؟",
            "كم عدد أيام الإجازة المرضية المدفوعة؟",
            "ما هي مدة إجازة الأمومة؟",
        ],
        "en": [
            "What are the annual leave rules?",
            "How many paid sick leave days are allowed?",
            "How long is maternity leave?",
        ],
    },
    "compensation": {
        "ar": ["كيف تحسب مكافأة نهاية الخدمة؟", "متى يجب دفع الأجور؟"],
        "en": ["How is the end-of-service award calculated?", "When must wages be paid?"],
    },
    "working_hours": {
        "ar": ["ما هو الحد الأقصى لساعات العمل؟", "كيف يحسب أجر العمل الإضافي؟"],
        "en": ["What are the maximum working hours?", "How is overtime pay calculated?"],
    },
    "contracts": {
        "ar": ["ما هي مدة فترة التجربة؟", "متى يتحول العقد إلى غير محدد المدة؟"],
        "en": ["How long is the probation period?", "When does a contract become indefinite?"],
    },
    "disciplinary": {
        "ar": ["ما هي الجزاءات التأديبية المسموح بها؟", "ما هو الحد الأقصى للخصم من الأجر؟"],
        "en": ["Which disciplinary penalties are allowed?", "What is the maximum wage deduction?"],
    },
    "general": {
        "ar": ["ما هي حقوق الموظف الأساسية؟"],
        "en": ["What are the basic employee rights?"],
    },
}

# =============================================================================
# Intent and Follow-up Patterns
# =============================================================================

INTENT_WORDS = {
    "ar": {
        "comparison": ["مقارنة", "فرق", "الفرق", "أفضل", "مقابل"],
        "request": ["أريد", "أحتاج", "ساعدني", "اشرح", "وضح"],
        "question": ["كيف", "ماذا", "أين", "متى", "لماذا", "هل", "ما", "كم"],
    },
    "en": {
        "comparison": ["compare", "difference", "better", "versus", "vs"],
        "request": ["i need", "i want", "help me", "explain", "show me", "tell me"],
        "question": ["how", "what", "where", "when", "why", "is", "are", "can", "do", "does"],
    },
}

FOLLOWUP_MARKERS = {
    "ar": ["وماذا عن", "ماذا عن", "وأيضا", "أيضا", "وكذلك", "وهل", "بالنسبة لذلك", "في هذه الحالة"],
    "en": ["what about", "and also", "also", "in that case", "how about", "and if", "same for"],
}

HR_ENTITIES = {
    "ar": [
        "راتب", "أجر", "مكافأة", "علاوة", "بدل", "إجازة", "غياب", "مرض",
        "تأمين", "تقاعد", "خدمة", "عقد", "توظيف", "استقالة", "فصل",
        "موظف", "عامل", "مدير", "صاحب العمل",
    ],
    "en": [
        "salary", "wage", "bonus", "allowance", "benefit", "leave", "vacation",
        "sick", "absence", "insurance", "retirement", "contract", "employment",
        "resignation", "termination", "employee", "worker", "manager", "employer",
    ],
}

# =============================================================================
# Entity Extraction Patterns
# =============================================================================

ENTITY_PATTERNS = {
    "law_reference": [
        r"(?:المادة|الماده|الفقرة|الفقره|البند)\s+(?:رقم\s+)?[\d٠-٩]+",
        r"(?i)\b(?:article|clause|section)\s+(?:no\.?\s+)?\d+",
    ],
    "money": [
        r"[\d٠-٩][\d٠-٩,.]*\s*(?:ريال|ريالا|ر\.س)",
        r"(?i)(?:SAR|SR)\s*\d[\d,.]*|\d[\d,.]*\s*(?:SAR|riyals?)",
    ],
    "date": [
        r"[\d٠-٩]{1,2}[/\-][\d٠-٩]{1,2}[/\-][\d٠-٩]{2,4}",
        r"[\d٠-٩]{4}[/\-][\d٠-٩]{1,2}[/\-][\d٠-٩]{1,2}",
    ],
}

# =============================================================================
# Section Heading Patterns (for chunk metadata)
# =============================================================================

SECTION_HEADING_PATTERNS = {
    "ar": r"^\s*(?:#+\s*)?((?:المادة|الماده|الفصل|الباب|البند|القسم)\s+\S+.*)$",
    "en": r"^\s*(?:#+\s*)?((?:Article|Section|Chapter|Part|Clause)\s+\S+.*)$",
}

# =============================================================================
# UI Labels and Formatting
# =============================================================================

LABELS = {
    "ar": {
        "article": "المادة",
        "labor_law": "نظام العمل",
        "scenario": "حالة",
        "document": "مستند",
        "page": "ص.",
        "sources": "المصادر:",
        "context_header": "المعلومات المرجعية:",
    },
    "en": {
        "article": "Article",
        "labor_law": "Labor Law",
        "scenario": "Scenario",
        "document": "Document",
        "page": "p.",
        "sources": "Sources:",
        "context_header": "Reference information:",
    },
}

FALLBACK_MESSAGES = {
    "ar": "عذراً، حدث خطأ في معالجة استفسارك. يرجى إعادة المحاولة أو إعادة صياغة السؤال.",
    "en": "Sorry, there was an error processing your query. Please try again or rephrase your question.",
}

NO_SOURCES_MESSAGES = {
    "ar": "لم أجد معلومات كافية في المستندات المتاحة للإجابة على هذا السؤال.",
    "en": "I could not find enough information in the available documents to answer this question.",
}

# =============================================================================
# LLM Prompt Templates
# =============================================================================

LLM_PROMPTS = {
    "ar": {
        "system": (
            "أنت مساعد موارد بشرية متخصص في نظام العمل السعودي وسياسات الشركة. "
            "أجب باللغة العربية اعتماداً فقط على المعلومات المرجعية المرفقة، "
            "واذكر رقم المادة أو اسم المستند عند الاستشهاد. "
            "إذا لم تكفِ المعلومات فقل ذلك بوضوح."
        ),
        "brief": "أجب بإيجاز في جملتين أو ثلاث.",
        "detailed": "قدم إجابة مفصلة تشمل الشروط والاستثناءات والخطوات العملية.",
        "balanced": "قدم إجابة واضحة متوسطة الطول.",
        "question": "السؤال:",
    },
    "en": {
        "system": (
            "You are an HR assistant specialised in Saudi Labor Law and company policy. "
            "Answer in English using only the reference information provided, "
            "and cite the article number or document name you rely on. "
            "If the information is insufficient, say so clearly."
        ),
        "brief": "Answer briefly in two or three sentences.",
        "detailed": "Give a detailed answer covering conditions, exceptions and practical steps.",
        "balanced": "Give a clear answer of moderate length.",
        "question": "Question:",
    },
}
