from app.services.language import LanguageDetector, normalise_language


def test_detects_scripts_and_function_words():
    detector = LanguageDetector()

    assert detector.detect("AI generated video of the ocean at night") == "english"
    assert detector.detect("ドラゴンの動画") == "japanese"
    assert detector.detect("Видео сгенерировано нейросетью") == "russian"
    assert detector.detect("Un video de los dragones para una noche sin luna") == "spanish"
    assert detector.detect("   ") is None
    assert detector.detect(None) is None


def test_normalise_language_filters():
    assert normalise_language(None) is None
    assert normalise_language("All") is None
    assert normalise_language("Hindi") == "hindi"
    assert normalise_language("pt-BR,pt;q=0.9") == "portuguese"
    assert normalise_language("xx") == "english"
