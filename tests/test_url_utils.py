from app.utils.url_utils import extract_image_id_from_url, extract_images_path_key, is_feishu_url

class TestExtractImageId:
    def test_images_path_segment(self):
        url = "https://open.feishu.cn/open-apis/im/v1/images/img_v3_02kj_a2fe0dbd-8dbf-4ab2?image_type=image"
        assert extract_image_id_from_url(url) == "img_v3_02kj_a2fe0dbd-8dbf-4ab2"

    def test_img_v3_key_anywhere(self):
        assert extract_image_id_from_url("https://example.com/view?key=img_v3_abc-123") == "img_v3_abc-123"

    def test_id_query_parameter(self):
        assert extract_image_id_from_url("https://open.feishu.cn/preview?id=rec12345") == "rec12345"

    def test_uuid(self):
        url = "https://example.com/files/3f2b8c1e-9a4d-4e7b-8c2f-1d2e3f4a5b6c.png"
        assert extract_image_id_from_url(url) == "3f2b8c1e-9a4d-4e7b-8c2f-1d2e3f4a5b6c"

    def test_long_path_segment(self):
        """API prefixes and short segments are skipped."""
        assert extract_image_id_from_url("https://open.feishu.cn/open-apis/v1/abcdefghijkl") == "abcdefghijkl"

    def test_no_match(self):
        assert extract_image_id_from_url("https://example.com/a/b") is None
        assert extract_image_id_from_url("not a url") is None

    def test_empty(self):
        assert extract_image_id_from_url("") is None
        assert extract_image_id_from_url(None) is None

class TestIsFeishuUrl:
    def test_feishu_host(self):
        assert is_feishu_url("https://open.feishu.cn/open-apis/im/v1/images/img_v3_x")

    def test_other_hosts(self):
        assert not is_feishu_url("https://example.com/image.png")
        assert not is_feishu_url(None)

class TestExtractImagesPathKey:
    def test_key_stops_at_query_and_fragment(self):
        assert extract_images_path_key("https://open.feishu.cn/open-apis/im/v1/images/img_v3_a?x=1") == "img_v3_a"
        assert extract_images_path_key("https://open.feishu.cn/open-apis/im/v1/images/img_v3_b#top") == "img_v3_b"

    def test_no_key(self):
        assert extract_images_path_key("https://open.feishu.cn/open-apis/im/v1/images/") is None
        assert extract_images_path_key("https://open.feishu.cn/other") is None
        assert extract_images_path_key(None) is None
