from response_cache import (
    SemanticResponseCache,
    extract_key_terms,
    normalize_text,
    word_similarity,
)

from conftest import FakeClock


class TestTextHelpers:
    def test_normalize_strips_punctuation_and_keeps_digits(self):
        assert normalize_text("  Привет,   Мир! 123 ") == "привет мир 123"

    def test_word_similarity_is_jaccard(self):
        assert word_similarity("как оформить возврат", "как оформить возврат товара") == 0.75
        assert word_similarity("", "") == 0.0

    def test_key_terms_skip_stop_words_and_short_words(self):
        assert extract_key_terms("Как оформить возврат на ламинат?") == ["оформить", "возврат", "ламинат"]


class TestSemanticResponseCache:
    def test_exact_hit_counts_saved_tokens(self):
        cache = SemanticResponseCache(clock=FakeClock())
        cache.set("Как оформить возврат?", "Через личный кабинет", tokens=300)

        hit = cache.get("как оформить возврат")
        assert hit is not None
        assert hit.response == "Через личный кабинет"
        assert hit.hit_count == 1
        assert cache.get_stats()["saved_tokens"] == 300

    def test_similar_question_hits(self):
        cache = SemanticResponseCache(clock=FakeClock())
        cache.set("Как оформить возврат?", "Через личный кабинет")

        hit = cache.get("Как оформить возврат товара?")
        assert hit is not None
        assert hit.response == "Через личный кабинет"

    def test_unrelated_question_misses(self):
        cache = SemanticResponseCache(clock=FakeClock())
        cache.set("Как оформить возврат?", "Через личный кабинет")

        assert cache.get("Какие цвета ламината есть в наличии?") is None
        stats = cache.get_stats()
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0

    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = SemanticResponseCache(ttl_minutes=60, clock=clock)
        cache.set("Как оформить возврат?", "старый ответ")

        clock.advance(60 * 60 + 1)
        assert cache.get("Как оформить возврат?") is None

        cache.set("Как оформить возврат?", "новый ответ")
        assert cache.get("Как оформить возврат?").response == "новый ответ"

    def test_eviction_prefers_old_and_unused_entries(self):
        clock = FakeClock()
        cache = SemanticResponseCache(max_size=10, clock=clock)
        questions = [f"тема{i} уникальная{i} строка{i}" for i in range(10)]
        for question in questions:
            cache.set(question, f"ответ на {question}")
            clock.advance(1)

        # Первая запись самая старая, но использованная
        assert cache.get(questions[0]) is not None
        cache.set("совершенно новый вопрос", "ответ")

        assert len(cache) == 10
        assert cache.get(questions[1]) is None
        assert cache.get(questions[0]) is not None

    def test_cleanup_removes_only_expired(self):
        clock = FakeClock()
        cache = SemanticResponseCache(ttl_minutes=1, clock=clock)
        cache.set("первый вопрос про доставку", "a")
        clock.advance(61)
        cache.set("второй вопрос про оплату", "b")

        assert cache.cleanup() == 1
        assert len(cache) == 1

    def test_pre_warm_and_clear(self):
        cache = SemanticResponseCache(clock=FakeClock())
        warmed = cache.pre_warm([
            {"question": "Режим работы офиса", "answer": "Пн-Пт 9-18", "tokens": 50},
            {"question": "Как связаться с менеджером", "answer": "Через форму"},
        ])

        assert warmed == 2
        assert cache.get_stats()["cache_size"] == 2
        cache.clear()
        assert len(cache) == 0
