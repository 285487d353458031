"""Tests for the multi-script tokenizer."""

import math

import pytest

from doc_graph.models import Token
from doc_graph.tokenizer import Tokenizer, contains_cjk


class TestFallback:
    def test_english_sentence(self, tokenizer):
        text = "Artificial intelligence is a branch of computer science."
        tokens = tokenizer.tokenize(text)
        words = [t.text for t in tokens]
        for expected in ("Artificial", "intelligence", "branch", "computer", "science"):
            assert expected in words
        for tok in tokens:
            assert text[tok.start:tok.end] == tok.text

    def test_offsets_are_exact(self, tokenizer):
        tokens = tokenizer.tokenize("Artificial intelligence")
        assert tokens[0] == Token("Artificial", 0, 10, "english")
        assert (tokens[1].start, tokens[1].end) == (11, 23)

    def test_accented_words_kept_whole(self, tokenizer):
        text = "café au lait, naïve Zürich"
        tokens = tokenizer.tokenize(text)
        assert tokens[0] == Token("café", 0, 4, "english")
        assert [t.text for t in tokens] == ["café", "au", "lait", "naïve", "Zürich"]
        for tok in tokens:
            assert text[tok.start:tok.end] == tok.text

    def test_mixed_script_boundaries(self, tokenizer):
        tokens = tokenizer.tokenize("Müller在北京")
        assert [(t.text, t.type) for t in tokens] == [
            ("Müller", "english"), ("北", "chinese"), ("京", "chinese"),
        ]

    def test_stopwords_removed(self, tokenizer):
        words = [t.text for t in tokenizer.tokenize("the cat is on the mat")]
        assert words == ["cat", "mat"]

    def test_cjk_per_character(self, tokenizer):
        text = "北京和上海"
        tokens = tokenizer.tokenize(text)
        # "和" is a stopword
        assert [t.text for t in tokens] == ["北", "京", "上", "海"]
        assert all(t.type == "chinese" for t in tokens)
        for tok in tokens:
            assert text[tok.start:tok.end] == tok.text

    def test_numbers(self, tokenizer):
        tokens = tokenizer.tokenize("version 3.14 released")
        number = [t for t in tokens if t.type == "number"]
        assert [t.text for t in number] == ["3.14"]

    def test_mixed_script_sorted_by_offset(self, tokenizer):
        text = "Python是2024年的热门语言"
        tokens = tokenizer.tokenize(text)
        starts = [t.start for t in tokens]
        assert starts == sorted(starts)
        assert tokens[0].text == "Python"
        for tok in tokens:
            assert text[tok.start:tok.end] == tok.text

    def test_empty_and_non_string(self, tokenizer):
        assert tokenizer.tokenize("") == []
        assert tokenizer.tokenize(None) == []  # type: ignore[arg-type]


class TestSegmenter:
    def test_segmented_round_trip(self):
        pytest.importorskip("jieba")
        tok = Tokenizer()
        text = "北京是中国的首都，上海是中国的经济中心。"
        tokens = tok.tokenize(text)
        assert tokens
        for t in tokens:
            assert text[t.start:t.end] == t.text
        assert "的" not in [t.text for t in tokens]

    def test_custom_dict_type(self):
        pytest.importorskip("jieba")
        tok = Tokenizer(custom_dict={"知识图谱": "term"})
        tokens = tok.tokenize("我们在构建知识图谱系统")
        kg = [t for t in tokens if t.text == "知识图谱"]
        assert kg and kg[0].type == "term"

    def test_segmenter_error_falls_back(self, caplog):
        class BrokenEngine:
            def cut(self, text, HMM=True):
                raise RuntimeError("boom")

        tok = Tokenizer()
        tok._engine = BrokenEngine()
        tokens = tok.tokenize("北京")
        assert [t.text for t in tokens] == ["北", "京"]
        assert "Segmenter failed" in caplog.text

    def test_disabled_segmenter_uses_fallback(self):
        tok = Tokenizer(use_segmenter=False)
        assert [t.text for t in tok.tokenize("中国")] == ["中", "国"]


class TestConfiguration:
    def test_add_and_remove_stopwords(self, tokenizer):
        tokenizer.add_stopwords(["cat"])
        assert tokenizer.is_stopword("CAT")
        assert [t.text for t in tokenizer.tokenize("cat dog")] == ["dog"]
        tokenizer.remove_stopwords(["cat"])
        assert [t.text for t in tokenizer.tokenize("cat dog")] == ["cat", "dog"]

    def test_custom_stopword_set_replaces_defaults(self):
        tok = Tokenizer(stopwords=["dog"], use_segmenter=False)
        assert [t.text for t in tok.tokenize("the dog")] == ["the"]

    def test_classify(self, tokenizer):
        tokenizer.add_custom_dict([("GPT", "product")])
        assert tokenizer.classify("GPT") == "product"
        assert tokenizer.classify("42") == "number"
        assert tokenizer.classify("hello") == "english"
        assert tokenizer.classify("你好") == "chinese"
        assert tokenizer.classify("!?") == "punctuation"
        assert tokenizer.classify("abc123") == "mixed"

    def test_contains_cjk(self):
        assert contains_cjk("hello 世界")
        assert not contains_cjk("hello world")


class TestStatistics:
    def test_word_frequency(self, tokenizer):
        tokens = tokenizer.tokenize("data data science")
        assert Tokenizer.get_word_frequency(tokens) == {"data": 2, "science": 1}

    def test_tfidf(self):
        tok = Token("data", 0, 4)
        assert Tokenizer.calculate_tfidf(tok, 1, 10) == pytest.approx(math.log(10 / 2) + 1)

    def test_tfidf_uses_weight(self):
        tok = Token("data", 0, 4, weight=2.0)
        assert Tokenizer.calculate_tfidf(tok, 0, 1) == pytest.approx(2.0)

    def test_tfidf_degenerate(self):
        assert Tokenizer.calculate_tfidf(Token("", 0, 0), 1, 10) == 0.0
        assert Tokenizer.calculate_tfidf(Token("x", 0, 1), 0, 0) == 0.0
